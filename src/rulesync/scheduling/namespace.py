"""Namespace provisioning.

``ensure`` is safe to call from several processes at once: a registration
that loses the race to another provisioner (``ConflictError``) counts as
success.
"""

from __future__ import annotations

from rulesync.core.errors import ConflictError, NotFoundError
from rulesync.core.logging import get_logger
from rulesync.scheduling.protocol import NamespaceRegistration, NamespaceService

logger = get_logger(__name__)

TEST_NAMESPACE_PREFIX = "test-ns-"
TEST_RETENTION_SECONDS = 24 * 60 * 60
DEFAULT_RETENTION_SECONDS = 7 * 24 * 60 * 60
TEST_DESCRIPTION = "rulesync test namespace (temporary)"
DEFAULT_DESCRIPTION = "rulesync notification processing namespace"


def registration_for(name: str) -> NamespaceRegistration:
    """Retention and description are chosen by name alone."""
    if name.startswith(TEST_NAMESPACE_PREFIX):
        return NamespaceRegistration(
            name=name,
            retention_seconds=TEST_RETENTION_SECONDS,
            description=TEST_DESCRIPTION,
        )
    return NamespaceRegistration(
        name=name,
        retention_seconds=DEFAULT_RETENTION_SECONDS,
        description=DEFAULT_DESCRIPTION,
    )


class NamespaceProvisioner:
    """Creates a namespace on first use."""

    def __init__(self, service: NamespaceService) -> None:
        self.service = service

    async def ensure(self, name: str | None) -> bool:
        """Make sure ``name`` exists.

        Returns:
            True when this call registered the namespace, False otherwise.

        Raises:
            ServiceError: any describe/register failure other than
                NOT_FOUND on describe and ALREADY_EXISTS on register.
        """
        if not name or not name.strip() or name == "default":
            return False

        try:
            await self.service.describe(name)
            logger.debug("namespace_exists", namespace=name)
            return False
        except NotFoundError:
            logger.info("namespace_not_found", namespace=name)

        registration = registration_for(name)
        try:
            await self.service.register(registration)
        except ConflictError:
            logger.warning("namespace_created_concurrently", namespace=name)
            return False

        logger.info(
            "namespace_registered",
            namespace=name,
            retention_seconds=registration.retention_seconds,
        )
        return True
