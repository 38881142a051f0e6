from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Tuple, TypeVar

from verigate.logging import get_logger
from verigate.service.errors import InternalError, NotFoundError
from verigate.storage.models import Identity

if TYPE_CHECKING:
    from verigate.service.identity import IdentityStore

logger = get_logger(__name__)

# Version conflicts are retried this many times before giving up
MAX_WRITE_ATTEMPTS = 8

ResultT = TypeVar("ResultT")


def mutate_identity(
    store: "IdentityStore",
    identity_id: str,
    apply: Callable[[Identity], ResultT],
) -> Tuple[Identity, ResultT]:
    """Read-modify-write one identity under compare-and-set.

    ``apply`` receives a private copy and may raise a ``ServiceError`` to
    abort without writing. It can run more than once when a concurrent
    writer wins, so it must derive everything from the copy it is given.
    """
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        identity = store.get_identity(identity_id)
        if identity is None:
            raise NotFoundError("identity not found")
        expected_version = identity.version
        result = apply(identity)
        if store.compare_and_swap(identity, expected_version):
            return identity, result
        logger.debug(
            "identity_write_conflict", identity_id=identity_id, attempt=attempt
        )
    logger.error("identity_write_contention", identity_id=identity_id)
    raise InternalError("identity update kept conflicting")
