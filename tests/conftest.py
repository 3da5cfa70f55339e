"""Shared fixtures for StackSet rollout tests."""

import threading
import time

import pytest

from stackset_rollout.organization.directory import (
    AccountDirectorySnapshot,
    AccountInfo,
    OrganizationalUnitInfo,
)
from stackset_rollout.stackset.backend import ProvisioningBackend, TargetDeploymentFailedError
from stackset_rollout.stackset.models import DeploymentResult, Template


class FakeBackend(ProvisioningBackend):
    """In-memory backend recording calls and peak concurrency."""

    def __init__(self, fail=(), conflict=(), delay=0.0):
        self.fail = set(fail)
        self.conflict = set(conflict)
        self.delay = delay
        self.calls = []
        self.deleted = []
        self.before_deploy = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def deploy(self, template, target):
        with self._lock:
            self.calls.append(target)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.before_deploy:
                self.before_deploy(target)
            if self.delay:
                time.sleep(self.delay)
            if target in self.conflict:
                raise TargetDeploymentFailedError(
                    f"Bucket already exists in {target}", reason="CONFLICT"
                )
            if target in self.fail:
                raise TargetDeploymentFailedError(f"Stack CREATE_FAILED in {target}")
            return DeploymentResult(
                target=target,
                succeeded=True,
                stack_id=f"stack-{target.account_id}-{target.region}",
            )
        finally:
            with self._lock:
                self.in_flight -= 1

    def delete(self, stack_name, target):
        self.deleted.append((stack_name, target))
        return DeploymentResult(target=target, succeeded=True)


def build_snapshot():
    """Organization used across tests.

    r-root
    ├── 555555555555 (management)
    ├── ou-prod
    │   ├── 111111111111
    │   ├── 222222222222
    │   └── ou-prod-eu
    │       └── 333333333333
    └── ou-dev
        ├── 444444444444
        └── 666666666666 (SUSPENDED)
    """
    snapshot = AccountDirectorySnapshot(root_id="r-root")
    for ou_id, parent_id, name in [
        ("ou-prod", "r-root", "Production"),
        ("ou-prod-eu", "ou-prod", "Production EU"),
        ("ou-dev", "r-root", "Development"),
    ]:
        snapshot.organizational_units[ou_id] = OrganizationalUnitInfo(
            ou_id=ou_id, parent_id=parent_id, name=name
        )
    for account_id, parent_id, status in [
        ("555555555555", "r-root", "ACTIVE"),
        ("111111111111", "ou-prod", "ACTIVE"),
        ("222222222222", "ou-prod", "ACTIVE"),
        ("333333333333", "ou-prod-eu", "ACTIVE"),
        ("444444444444", "ou-dev", "ACTIVE"),
        ("666666666666", "ou-dev", "SUSPENDED"),
    ]:
        snapshot.accounts[account_id] = AccountInfo(
            account_id=account_id, parent_id=parent_id, status=status
        )
    return snapshot


@pytest.fixture
def snapshot():
    return build_snapshot()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def template():
    return Template(
        name="baseline",
        body="AWSTemplateFormatVersion: '2010-09-09'\nResources: {}\n",
        capabilities=("CAPABILITY_NAMED_IAM",),
        parameters={"BucketPrefix": "org"},
    )


@pytest.fixture
def backend_factory():
    """Build FakeBackend instances with failing or conflicting targets."""
    return FakeBackend


@pytest.fixture
def snapshot_factory():
    """Build fresh copies of the test organization."""
    return build_snapshot
