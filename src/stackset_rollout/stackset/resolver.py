"""Deployment scope resolution.

Evaluates a DeploymentScope against an AccountDirectorySnapshot and
produces the concrete (account, region) targets of a rollout.
"""

import logging
from typing import List

from ..organization.directory import AccountDirectorySnapshot
from .models import AccountFilterType, DeploymentScope, Target


logger = logging.getLogger(__name__)


class InvalidScopeError(Exception):
    """Raised when a deployment scope cannot be resolved to any target."""
    pass


class TargetResolver:
    """Resolves deployment scopes into targets.

    Resolution is pure given a snapshot: the same scope and snapshot always
    produce the same targets in the same order. Targets are ordered by
    region declaration order, then by the order accounts were first seen
    (organizational units in declaration order, then explicit accounts).
    """

    def resolve(self, scope: DeploymentScope,
                directory: AccountDirectorySnapshot) -> List[Target]:
        """Resolve a scope into deduplicated targets.

        Args:
            scope: Deployment scope to resolve
            directory: Snapshot of the organization

        Returns:
            Ordered list of unique targets

        Raises:
            InvalidScopeError: When an OU or account is unknown, no region is
                given, or the resulting target set is empty
        """
        regions = list(dict.fromkeys(scope.regions))
        if not regions:
            raise InvalidScopeError("Deployment scope has no regions")

        accounts = self._resolve_accounts(scope, directory)
        accounts = self._apply_filter(scope, accounts, directory)

        if not accounts:
            raise InvalidScopeError("Deployment scope resolves to an empty target set")

        targets = [Target(account_id=account_id, region=region)
                   for region in regions for account_id in accounts]
        logger.info(
            f"Resolved {len(targets)} targets ({len(accounts)} accounts x {len(regions)} regions)"
        )
        return targets

    def _resolve_accounts(self, scope: DeploymentScope,
                          directory: AccountDirectorySnapshot) -> List[str]:
        unknown_ous = [ou for ou in scope.organizational_units if not directory.has_ou(ou)]
        if unknown_ous:
            raise InvalidScopeError(
                f"Organizational units not found: {', '.join(unknown_ous)}"
            )
        unknown_accounts = [a for a in scope.accounts if not directory.has_account(a)]
        if unknown_accounts:
            raise InvalidScopeError(
                f"Accounts not found in organization: {', '.join(unknown_accounts)}"
            )

        ou_ids = list(scope.organizational_units)
        if scope.include_root and directory.root_id not in ou_ids:
            ou_ids.insert(0, directory.root_id)

        members: List[str] = []
        for ou_id in ou_ids:
            # The root always covers the whole organization
            recursive = scope.include_nested_ous or ou_id == directory.root_id
            members.extend(directory.accounts_under(ou_id, recursive=recursive))

        resolved = []
        for account_id in dict.fromkeys(members + list(scope.accounts)):
            status = directory.accounts[account_id].status
            if status != "ACTIVE":
                logger.warning(f"Skipping account {account_id} with status {status}")
                continue
            resolved.append(account_id)
        return resolved

    def _apply_filter(self, scope: DeploymentScope, accounts: List[str],
                      directory: AccountDirectorySnapshot) -> List[str]:
        filter_type = scope.account_filter_type
        if filter_type is AccountFilterType.NONE or not scope.exclusions:
            if filter_type is AccountFilterType.INTERSECTION:
                return []
            return accounts

        for account_id in scope.exclusions:
            if not directory.has_account(account_id):
                logger.warning(f"Filter account {account_id} is not in the organization")

        filter_set = set(scope.exclusions)
        if filter_type is AccountFilterType.DIFFERENCE:
            return [a for a in accounts if a not in filter_set]
        return [a for a in accounts if a in filter_set]
