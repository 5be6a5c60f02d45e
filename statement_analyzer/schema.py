# statement_analyzer/schema.py
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Document(BaseModel):
    """A loaded PDF. Page count is derived from the bytes, never taken on trust."""

    model_config = ConfigDict(frozen=True)

    content: bytes
    page_count: int = Field(ge=1)
    filename: str = "statement.pdf"


class PageRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: int = Field(ge=1)
    end: int = Field(ge=1)
    index: int = Field(ge=0)

    @property
    def pages(self) -> int:
        return self.end - self.start + 1

    @property
    def label(self) -> str:
        return f"pages {self.start}-{self.end}"


class ExtractionJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    range: PageRange
    # Only the first chunk is asked for account name/number and bank name
    is_first: bool = False


class StagedDocument(BaseModel):
    """Where a client put the document for the duration of one run."""

    document: Document
    uri: Optional[str] = None
    remote_name: Optional[str] = None
    pages_text: List[str] = Field(default_factory=list)


# -------- Provider payloads (lenient decode) --------

class RawTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date: Optional[Any] = None
    description: Optional[Any] = None
    # coerced later, one record at a time
    amount: Optional[Any] = None
    balance: Optional[Any] = None


class RawChunkResult(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    is_not_bank_statement: bool = Field(default=False, alias="isNotBankStatement")
    account_name: str = Field(default="", alias="accountName")
    account_number: str = Field(default="", alias="accountNumber")
    bank_name: str = Field(default="", alias="bankName")
    transactions: List[RawTransaction] = Field(default_factory=list)

    @field_validator("is_not_bank_statement", mode="before")
    @classmethod
    def _truthy_flag(cls, v):
        if isinstance(v, str):
            return v.strip().lower() in ("true", "yes", "1")
        return bool(v)

    @field_validator("account_name", "account_number", "bank_name", mode="before")
    @classmethod
    def _header_text(cls, v):
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("transactions", mode="before")
    @classmethod
    def _transaction_list(cls, v):
        if not isinstance(v, list):
            return []
        return [t for t in v if isinstance(t, dict)]


# -------- Final report --------

class Transaction(BaseModel):
    date: str
    description: str
    amount: float
    balance: float
    type: Literal["credit"] = "credit"


class StatementReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_name: str = Field(default="", alias="accountName")
    account_number: str = Field(default="", alias="accountNumber")
    bank_name: str = Field(default="", alias="bankName")
    start_date: str = Field(default="", alias="startDate")
    end_date: str = Field(default="", alias="endDate")
    transactions: List[Transaction] = Field(default_factory=list)
    total_credits: float = Field(default=0.0, alias="totalCredits")


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    blob_url: Optional[str] = Field(default=None, alias="blobUrl")


# -------- Stream events (one JSON object per line) --------

class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    current: int
    total: int


class ResultEvent(BaseModel):
    type: Literal["result"] = "result"
    data: StatementReport


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str


StreamEvent = Union[ProgressEvent, ResultEvent, ErrorEvent]


def to_ndjson(event: StreamEvent) -> str:
    return event.model_dump_json(by_alias=True) + "\n"
