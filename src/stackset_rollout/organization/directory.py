"""AWS Organizations account directory for rollout target resolution.

This module reads organizational unit membership and account metadata
from AWS Organizations and captures it as an immutable snapshot that the
target resolver evaluates deployment scopes against.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager


logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """Raised when the organization directory cannot be read."""
    pass


@dataclass(frozen=True)
class AccountInfo:
    """Member account metadata."""

    account_id: str
    parent_id: str
    name: str = ""
    email: str = ""
    status: str = "ACTIVE"


@dataclass(frozen=True)
class OrganizationalUnitInfo:
    """Organizational unit metadata."""

    ou_id: str
    parent_id: str
    name: str = ""


@dataclass
class AccountDirectorySnapshot:
    """Point-in-time view of an organization's OU tree and accounts.

    The root is treated as an organizational unit with no parent, so
    ``accounts_under(root_id)`` returns every account in the organization.
    """

    root_id: str
    organizational_units: Dict[str, OrganizationalUnitInfo] = field(default_factory=dict)
    accounts: Dict[str, AccountInfo] = field(default_factory=dict)

    def has_ou(self, ou_id: str) -> bool:
        return ou_id == self.root_id or ou_id in self.organizational_units

    def has_account(self, account_id: str) -> bool:
        return account_id in self.accounts

    def child_ous(self, parent_id: str) -> List[str]:
        return [ou.ou_id for ou in self.organizational_units.values()
                if ou.parent_id == parent_id]

    def list_accounts(self, parent_id: str) -> List[str]:
        """List accounts directly under a root or OU."""
        return [account.account_id for account in self.accounts.values()
                if account.parent_id == parent_id]

    def accounts_under(self, ou_id: str, recursive: bool = True) -> List[str]:
        """List accounts under an OU, descending into child OUs when recursive.

        Accounts are returned depth-first, parent OU accounts before child
        OU accounts, each level in insertion order.
        """
        result = self.list_accounts(ou_id)
        if recursive:
            for child_id in self.child_ous(ou_id):
                result.extend(self.accounts_under(child_id, recursive=True))
        return result


class OrganizationsDirectory:
    """Account directory service backed by the AWS Organizations API."""

    def __init__(self, aws_client: AWSClientManager) -> None:
        """Initialize the directory.

        Args:
            aws_client: Configured AWS client manager
        """
        self.aws_client = aws_client
        self._org_client = None

    def _get_client(self):
        """Get Organizations client with caching.

        Returns:
            Configured Organizations client
        """
        if self._org_client is None:
            self._org_client = self.aws_client.get_client(
                'organizations',
                self.aws_client.get_current_region()
            )
        return self._org_client

    def get_root_id(self) -> str:
        """Get the root ID of the organization.

        Returns:
            Root ID string

        Raises:
            DirectoryError: When unable to get root ID
        """
        try:
            response = self._get_client().list_roots()
            roots = response['Roots']

            if not roots:
                raise DirectoryError("No roots found in organization")

            return roots[0]['Id']

        except ClientError as e:
            raise DirectoryError(f"Failed to get root ID: {e}")

    def list_accounts(self, ou_id: str) -> List[str]:
        """List account IDs directly under a root or OU.

        Args:
            ou_id: Root or organizational unit ID

        Returns:
            List of member account IDs

        Raises:
            DirectoryError: When the parent cannot be listed
        """
        return [account['Id'] for account in self._list_account_records(ou_id)]

    def list_child_ous(self, parent_id: str) -> List[Dict[str, str]]:
        """List organizational units directly under a parent.

        Args:
            parent_id: Root or organizational unit ID

        Returns:
            List of organizational unit records (``Id``, ``Name``)

        Raises:
            DirectoryError: When the parent cannot be listed
        """
        try:
            paginator = self._get_client().get_paginator('list_organizational_units_for_parent')
            ous = []
            for page in paginator.paginate(ParentId=parent_id):
                ous.extend(page['OrganizationalUnits'])
            return ous

        except ClientError as e:
            error_code = e.response['Error']['Code']
            if error_code == 'ParentNotFoundException':
                raise DirectoryError(f"Organizational unit not found: {parent_id}")
            raise DirectoryError(f"Failed to list OUs under {parent_id}: {e}")

    def _list_account_records(self, parent_id: str) -> List[Dict[str, str]]:
        try:
            paginator = self._get_client().get_paginator('list_accounts_for_parent')
            accounts = []
            for page in paginator.paginate(ParentId=parent_id):
                accounts.extend(page['Accounts'])
            return accounts

        except ClientError as e:
            error_code = e.response['Error']['Code']
            if error_code == 'ParentNotFoundException':
                raise DirectoryError(f"Organizational unit not found: {parent_id}")
            raise DirectoryError(f"Failed to list accounts under {parent_id}: {e}")

    def snapshot(self, root_id: Optional[str] = None) -> AccountDirectorySnapshot:
        """Walk the whole OU tree and capture it as a snapshot.

        Args:
            root_id: Optional root ID, looked up when omitted

        Returns:
            AccountDirectorySnapshot of the organization

        Raises:
            DirectoryError: When any Organizations call fails
        """
        root_id = root_id or self.get_root_id()
        snapshot = AccountDirectorySnapshot(root_id=root_id)

        pending = [root_id]
        while pending:
            parent_id = pending.pop(0)

            for account in self._list_account_records(parent_id):
                snapshot.accounts[account['Id']] = AccountInfo(
                    account_id=account['Id'],
                    parent_id=parent_id,
                    name=account.get('Name', ''),
                    email=account.get('Email', ''),
                    status=account.get('Status', 'ACTIVE'),
                )

            for ou in self.list_child_ous(parent_id):
                snapshot.organizational_units[ou['Id']] = OrganizationalUnitInfo(
                    ou_id=ou['Id'],
                    parent_id=parent_id,
                    name=ou.get('Name', ''),
                )
                pending.append(ou['Id'])

        logger.info(
            f"Captured directory snapshot: {len(snapshot.organizational_units)} OUs, "
            f"{len(snapshot.accounts)} accounts"
        )
        return snapshot
