"""Centralized AWS client management with session handling.

This module provides a centralized way to manage AWS clients for the
management account and for member accounts reached through an assumed
execution role. Rollout workers share one manager across threads, so
client creation is serialized.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
import boto3
from botocore.exceptions import (
    NoCredentialsError,
    ClientError,
    ProfileNotFound,
)


class AWSClientManager:
    """Centralized AWS client management with session handling.

    Clients are cached per (service, region) for the management account
    and per (service, account, region, role) for member accounts.
    """

    # Session name recorded in CloudTrail for assumed execution roles
    ROLE_SESSION_NAME = "stackset-rollout"

    # Assumed-role credentials are renewed this long before they expire
    CREDENTIAL_REFRESH_MARGIN = timedelta(minutes=5)

    def __init__(self, profile_name: Optional[str] = None,
                 region_name: Optional[str] = None) -> None:
        """Initialize AWS client manager.

        Args:
            profile_name: Optional AWS profile name for credentials
            region_name: Optional default region for management clients

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, boto3.client] = {}
        self._member_clients: Dict[str, Tuple[boto3.client, Optional[datetime]]] = {}
        self._profile_name = profile_name
        self._region_name = region_name
        self._lock = threading.Lock()
        self._validate_credentials()

    def _validate_credentials(self) -> None:
        """Validate AWS credentials are available and working.

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        try:
            session = self._get_session()
            # Test credentials by getting caller identity
            sts_client = session.client("sts")
            sts_client.get_caller_identity()
        except NoCredentialsError:
            raise NoCredentialsError()
        except ProfileNotFound:
            raise ProfileNotFound(profile=self._profile_name)
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidUserID.NotFound":
                raise NoCredentialsError(
                    "AWS credentials are invalid or expired. "
                    "Please update your credentials."
                )
            raise

    def _get_session(self) -> boto3.Session:
        """Get or create boto3 session.

        Returns:
            Configured boto3 session
        """
        if self._session is None:
            if self._profile_name:
                self._session = boto3.Session(profile_name=self._profile_name)
            else:
                self._session = boto3.Session()
        return self._session

    def get_client(self, service_name: str,
                   region_name: Optional[str] = None) -> boto3.client:
        """Get AWS service client for the management account.

        Args:
            service_name: AWS service name (e.g., 'organizations', 'cloudformation')
            region_name: AWS region name, defaults to the current region

        Returns:
            Configured boto3 client for the service and region
        """
        region_name = region_name or self.get_current_region()
        client_key = f"{service_name}_{region_name}"

        with self._lock:
            if client_key not in self._clients:
                session = self._get_session()
                self._clients[client_key] = session.client(
                    service_name, region_name=region_name
                )
            return self._clients[client_key]

    def get_client_for_account(self, service_name: str, account_id: str,
                               region_name: str, role_name: str) -> boto3.client:
        """Get AWS service client inside a member account.

        Assumes ``role_name`` in ``account_id`` and builds a client from the
        temporary credentials. The client is cached until its credentials
        come within CREDENTIAL_REFRESH_MARGIN of expiring, after which the
        role is assumed again.

        Args:
            service_name: AWS service name
            account_id: 12-digit member account ID
            region_name: AWS region name
            role_name: Execution role name to assume in the member account

        Returns:
            boto3 client operating inside the member account

        Raises:
            ClientError: When the role cannot be assumed
        """
        client_key = f"{service_name}_{account_id}_{region_name}_{role_name}"

        with self._lock:
            cached = self._member_clients.get(client_key)
            if cached and not self._expiring(cached[1]):
                return cached[0]

        sts_client = self.get_client("sts")
        response = sts_client.assume_role(
            RoleArn=f"arn:aws:iam::{account_id}:role/{role_name}",
            RoleSessionName=self.ROLE_SESSION_NAME,
        )
        credentials = response["Credentials"]
        client = boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
        ).client(service_name, region_name=region_name)
        expiration = credentials.get("Expiration")

        with self._lock:
            cached = self._member_clients.get(client_key)
            if cached and not self._expiring(cached[1]):
                return cached[0]
            self._member_clients[client_key] = (client, expiration)
            return client

    def _expiring(self, expiration: Optional[datetime]) -> bool:
        if expiration is None:
            return False
        return expiration - datetime.now(timezone.utc) <= self.CREDENTIAL_REFRESH_MARGIN

    def get_current_region(self) -> str:
        """Get current AWS region from session.

        Returns:
            Current AWS region name
        """
        if self._region_name:
            return self._region_name
        session = self._get_session()
        return session.region_name or "us-east-1"

    def get_account_id(self) -> str:
        """Get current AWS account ID.

        Returns:
            Current AWS account ID

        Raises:
            ClientError: When unable to get account information
        """
        sts_client = self.get_client("sts", self.get_current_region())
        response = sts_client.get_caller_identity()
        return response["Account"]

    def clear_cache(self) -> None:
        """Clear cached clients to force recreation."""
        with self._lock:
            self._clients.clear()
            self._member_clients.clear()
