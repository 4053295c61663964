"""
Per-item outcome types shared by the reconcilers and the import merger.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ItemError:
    """
    A failure confined to one record of a batch.

    Attributes:
        ref: Remote href, contact id or profile id the failure relates to
        kind: Error category ("parse", "transport", "store", "invalid")
        message: Human-readable detail
        contact_id: Local contact id, when one is known
    """

    ref: str
    kind: str
    message: str
    contact_id: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.ref}: {self.kind} error: {self.message}"
