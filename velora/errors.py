"""
Error taxonomy for the Follow-Up Radar.

- Uninitialized dependency: a store handle is missing (mutations raise, reads degrade)
- Remote I/O failure: the store or LLM could not be reached or timed out
- Not found: a mutation targeted a record that does not exist
- Conflict: an insert-only write lost against an existing document
- Validation: caller input that cannot be attributed to a user
"""

from typing import Optional


class VeloraError(Exception):
    """Base class for all radar errors"""


class StoreNotInitializedError(VeloraError):
    """The document store handle is missing or misconfigured"""

    def __init__(self, message: str = "Document store not initialized"):
        super().__init__(message)


class StoreUnavailableError(VeloraError):
    """A document store call failed or exceeded its timeout"""


class DocumentExistsError(VeloraError):
    """An insert-only write found an existing document under the same key"""

    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(f"Document {collection}/{key} already exists")


class DocumentNotFoundError(VeloraError, KeyError):
    """An update targeted a document that does not exist"""

    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(f"Document {collection}/{key} not found")

    def __str__(self) -> str:
        return f"Document {self.collection}/{self.key} not found"


class FollowupNotFoundError(VeloraError):
    def __init__(self, followup_id: str):
        self.followup_id = followup_id
        super().__init__(f"Followup {followup_id} not found")


class RateLimitExceededError(VeloraError):
    """Raised by the HTTP layer when an action is rejected by the limiter"""

    def __init__(self, retry_after: Optional[int] = None):
        self.retry_after = retry_after
        super().__init__("Rate limit exceeded")


class ActionLinkError(VeloraError):
    """A signed action link is invalid, expired, or already used"""
