"""Short-lived credential acquisition for privileged operations."""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional

from botocore.exceptions import BotoCoreError, ClientError

from stackwarden.utils.aws_client import AWSClientManager
from stackwarden.utils.errors import CredentialError, ErrorContext, error_handler
from stackwarden.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Credentials:
    """Temporary credentials for a named role."""

    role: str
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    expiration: Optional[datetime] = None

    @property
    def cleared(self) -> bool:
        return not (self.access_key_id or self.secret_access_key or self.session_token)

    def clear(self) -> None:
        """Overwrite the secret material held by this object."""
        self.access_key_id = ""
        self.secret_access_key = ""
        self.session_token = None


class CredentialStore(ABC):
    """Supplies short-lived credentials for a named role."""

    @abstractmethod
    def acquire(self, role: str) -> Credentials:
        """Acquire credentials for ``role``.

        Raises:
            CredentialError: If the credentials cannot be issued
        """

    def release(self, credentials: Credentials) -> None:
        """Release credentials once the privileged operation is over."""
        credentials.clear()


class StsCredentialStore(CredentialStore):
    """Issues role credentials through ``sts:AssumeRole``."""

    def __init__(
        self,
        client_manager: AWSClientManager,
        session_name: str = "stackwarden",
        duration_seconds: int = 3600,
        external_id: Optional[str] = None
    ):
        """Initialize STS credential store.

        Args:
            client_manager: Client manager holding the base identity
            session_name: Role session name recorded in CloudTrail
            duration_seconds: Lifetime of issued credentials
            external_id: Optional external id required by the role trust policy
        """
        self.client_manager = client_manager
        self.session_name = session_name
        self.duration_seconds = duration_seconds
        self.external_id = external_id

    def acquire(self, role: str) -> Credentials:
        params = {
            'RoleArn': role,
            'RoleSessionName': self.session_name,
            'DurationSeconds': self.duration_seconds,
        }
        if self.external_id:
            params['ExternalId'] = self.external_id

        logger.info(f"Assuming role {role}")
        try:
            response = self.client_manager.get_client('sts').assume_role(**params)
        except (ClientError, BotoCoreError) as e:
            error = error_handler.handle_exception(
                e, ErrorContext(operation='assume-role', provider_service='sts')
            )
            raise CredentialError(
                f"Could not assume role {role}: {error.message}",
                cause=e,
                suggestions=error.suggestions
            ) from e

        issued = response['Credentials']
        return Credentials(
            role=role,
            access_key_id=issued['AccessKeyId'],
            secret_access_key=issued['SecretAccessKey'],
            session_token=issued.get('SessionToken'),
            expiration=issued.get('Expiration'),
        )


@contextmanager
def scoped_credentials(store: CredentialStore, role: str) -> Iterator[Credentials]:
    """Hold credentials for ``role`` only for the duration of the block.

    Credentials are released and wiped on every exit path, including
    exceptions raised inside the block.
    """
    credentials = store.acquire(role)
    try:
        yield credentials
    finally:
        try:
            store.release(credentials)
        finally:
            credentials.clear()
            logger.debug(f"Released credentials for {role}")
