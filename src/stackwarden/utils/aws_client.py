"""AWS client management and session handling."""

from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

from stackwarden.utils.logging import get_logger

logger = get_logger(__name__)


class AWSClientManager:
    """Manages a boto3 session and caches its clients.

    The session is built either from a named profile or from explicit
    temporary credentials; credentials are never read from or written to
    process environment variables by this class.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        credentials: Optional[Any] = None,
        max_pool_connections: int = 10,
        session: Optional[boto3.Session] = None
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            credentials: Optional ``Credentials`` object from a credential store
            max_pool_connections: Maximum number of connections in the connection pool
            session: Pre-built session, mainly for tests
        """
        self.profile = profile
        self.region = region
        self.credentials = credentials
        self._session: Optional[boto3.Session] = session
        self._clients: Dict[str, Any] = {}

        # Provider-side retries stay in standard mode; our own retry layer
        # only wraps read calls
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={'mode': 'standard', 'max_attempts': 3},
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session.

        Returns:
            Configured boto3 session
        """
        if self._session is None:
            kwargs = {}
            if self.credentials is not None:
                kwargs['aws_access_key_id'] = self.credentials.access_key_id
                kwargs['aws_secret_access_key'] = self.credentials.secret_access_key
                kwargs['aws_session_token'] = self.credentials.session_token
            elif self.profile:
                kwargs['profile_name'] = self.profile
            if self.region:
                kwargs['region_name'] = self.region

            self._session = boto3.Session(**kwargs)
            logger.info(
                f"Created AWS session - Region: {self._session.region_name}, "
                f"Identity: {'role credentials' if self.credentials else self.profile or 'default'}"
            )

        return self._session

    def get_client(self, service_name: str):
        """Get boto3 client for a service.

        Args:
            service_name: AWS service name (e.g., 'cloudformation', 'ec2')

        Returns:
            Boto3 client for the service
        """
        if service_name not in self._clients:
            self._clients[service_name] = self.session.client(service_name, config=self._boto_config)
            logger.debug(f"Created {service_name} client")
        return self._clients[service_name]

    def get_region(self) -> str:
        """Get the AWS region.

        Returns:
            AWS region name
        """
        return self.session.region_name

    def close(self):
        """Drop cached clients, the session and any held credentials."""
        self._clients.clear()
        self._session = None
        self.credentials = None
        logger.debug("Closed AWS client manager")
