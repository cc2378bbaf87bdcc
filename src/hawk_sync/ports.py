# =============================================================================
# Collaborator Interfaces
# =============================================================================
# The sync engine talks to the rest of the world through these protocols.
# Hawk-Sync ships one implementation of each (SQLite store, keyring
# registry, rule classifier, webhook/Slack notifiers, inscriptis content
# pipeline), but anything with the right methods can be injected.
# =============================================================================

from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from hawk_sync.core import Account, Classification, NormalizedMessage, OAuthCredential


class AccountRegistry(Protocol):
    """Source of accounts and sink for refreshed credentials."""

    async def get_account(self, account_id: str) -> "Account | None":
        ...

    async def is_active(self, account_id: str) -> bool:
        ...

    async def save_credential(self, account_id: str, credential: "OAuthCredential") -> None:
        ...


class MessageStore(Protocol):
    """Where processed messages end up (search index, database, ...)."""

    async def exists(self, message_id: str) -> bool:
        ...

    async def index_batch(self, messages: Sequence["NormalizedMessage"]) -> None:
        ...


@runtime_checkable
class WatermarkSource(Protocol):
    """A store that can tell us the highest UID it holds for an account."""

    async def highest_uid(self, account_id: str) -> int:
        ...


class Classifier(Protocol):
    async def classify(self, message: "NormalizedMessage") -> "Classification":
        ...


class Notifier(Protocol):
    async def notify(self, message: "NormalizedMessage") -> None:
        ...


class ContentPipeline(Protocol):
    async def process(self, message: "NormalizedMessage") -> "NormalizedMessage":
        ...
