"""
Print Broker Settlement Hub - Document Parser Adapter

Upstream parties send purchase orders and invoices as PDFs. Field extraction
is done by an external parsing service whose output is untrusted: every field
is optional and may be malformed. Nothing it returns reaches the settlement
engine before passing PartialJobFields validation.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from dateutil import parser as date_parser
from pydantic import BaseModel, ValidationError as PydanticValidationError, field_validator

from services import settlement_config
from services.errors import DocumentParserError

logger = logging.getLogger(__name__)


class PartialJobFields(BaseModel):
    """Best-effort fields extracted from a document, validated before use."""
    document_number: Optional[str] = None
    reference_number: Optional[str] = None
    job_number: Optional[str] = None
    customer_id: Optional[str] = None
    vendor_id: Optional[str] = None
    size_key: Optional[str] = None
    quantity: Optional[int] = None
    amount: Optional[Decimal] = None
    document_date: Optional[str] = None

    @field_validator("document_number", "reference_number", "job_number", "customer_id",
                     "vendor_id", "size_key", mode="before")
    @classmethod
    def _strip(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, str):
            value = value.replace(",", "").replace("$", "").strip()
        return value

    @field_validator("amount")
    @classmethod
    def _non_negative(cls, value):
        if value is not None and value < 0:
            raise ValueError("amount must not be negative")
        return value

    @field_validator("quantity")
    @classmethod
    def _positive_quantity(cls, value):
        if value is not None and value <= 0:
            raise ValueError("quantity must be positive")
        return value

    @field_validator("document_date", mode="before")
    @classmethod
    def _date(cls, value):
        if value in (None, ""):
            return None
        try:
            return date_parser.parse(str(value)).date().isoformat()
        except (ValueError, OverflowError):
            raise ValueError(f"unparseable date: {value}")


def validate_parsed_fields(raw: Any) -> PartialJobFields:
    """Validate untrusted parser output."""
    if not isinstance(raw, dict):
        raise DocumentParserError("Parser returned a non-object result", {"type": type(raw).__name__})
    try:
        return PartialJobFields.model_validate(raw)
    except PydanticValidationError as e:
        raise DocumentParserError(
            "Parser returned invalid fields",
            {"errors": [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]},
        )


class DocumentParser(ABC):

    @abstractmethod
    async def parse(self, raw_bytes: bytes, filename: str = "document.pdf") -> Dict[str, Any]:
        """Return raw extracted fields; callers validate them."""
        pass


class HttpDocumentParser(DocumentParser):
    """Calls the external extraction service over HTTP."""

    def __init__(self, url: str = None, timeout: float = None, client: Optional[httpx.AsyncClient] = None):
        self.url = url or settlement_config.DOCUMENT_PARSER_URL
        self.timeout = timeout or settlement_config.DOCUMENT_PARSER_TIMEOUT
        self._client = client

    async def parse(self, raw_bytes: bytes, filename: str = "document.pdf") -> Dict[str, Any]:
        if not self.url:
            raise DocumentParserError("DOCUMENT_PARSER_URL is not configured")
        files = {"file": (filename, raw_bytes)}
        try:
            if self._client is not None:
                response = await self._client.post(self.url, files=files, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, files=files)
        except httpx.HTTPError as e:
            logger.warning("Document parser unreachable: %s", e)
            raise DocumentParserError(f"Document parser unreachable: {e}")

        if response.status_code != 200:
            raise DocumentParserError(
                f"Document parser returned {response.status_code}",
                {"status_code": response.status_code, "body": response.text[:500]},
            )
        try:
            return response.json()
        except ValueError:
            raise DocumentParserError("Document parser returned invalid JSON")


async def parse_document(parser: DocumentParser, raw_bytes: bytes, filename: str = "document.pdf") -> PartialJobFields:
    """Run the parser and validate its output."""
    return validate_parsed_fields(await parser.parse(raw_bytes, filename))
