"""
Core interfaces for the pipeline's external collaborators.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from .models import ExtractionRequest


class TransportRequest(BaseModel):
    """One rendered notification handed to a channel transport."""
    recipients: List[str] = Field(default_factory=list)
    subject: str
    text: str
    html: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)


class Extractor(ABC):
    """Abstract base class for the extraction worker.

    Given the page URL and a blueprint's rules, an extractor returns the list
    of raw records found on the page. It never sees stored state.
    """

    @abstractmethod
    async def extract(self, request: ExtractionRequest) -> List[Dict[str, Any]]:
        """Fetch the page and return its records.

        Raises ExtractionError when the worker reports a failure.
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the extractor."""
        pass


class Transport(ABC):
    """Abstract base class for notification channels.

    ``send`` returns normally on success; any exception counts as a failed
    attempt and is retried by the dispatcher.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this transport."""
        pass

    @abstractmethod
    async def send(self, request: TransportRequest) -> None:
        """Deliver one notification."""
        pass

    async def close(self) -> None:
        pass
