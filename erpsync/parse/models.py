"""Data models for ERP transaction lines, invoice aggregates and sync runs."""
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class SyncKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChangeKind(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"


class TransactionLine(BaseModel):
    """One ERP row: a single line item of a single document."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    document_number: Optional[int] = Field(default=None, alias="nr_docto")
    company_code: Optional[int] = Field(default=None, alias="cod_empresa")
    customer_name: str = Field(default="", alias="nome_pessoa")
    customer_city: str = Field(default="", alias="cidade_pessoa")
    customer_state: str = Field(default="", alias="uf_pessoa")
    document_date: str = Field(default="", alias="data_dcto")
    sku: str = Field(default="", alias="cod_item")
    description: str = Field(default="", alias="descricao")
    unit: str = Field(default="", alias="unidade")
    quantity: float = Field(default=0.0, alias="quantidade", allow_inf_nan=False)
    net_value: float = Field(default=0.0, alias="valor_liquido", allow_inf_nan=False)
    weight_kg: float = Field(default=0.0, alias="quantidade_kgl", allow_inf_nan=False)

    @field_validator("quantity", "net_value", "weight_kg", mode="before")
    @classmethod
    def _none_is_zero(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 0.0
        return value

    @field_validator(
        "customer_name", "customer_city", "customer_state",
        "document_date", "sku", "description", "unit",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("document_number", "company_code", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class InvoiceItem(BaseModel):
    sku: str
    description: str = ""
    quantity: float = 0.0
    unit: str = ""
    weight_kg: float = 0.0
    quantity_picked: float = 0.0


class InvoiceAggregate(BaseModel):
    """Invoice rebuilt from the transaction lines sharing one document number."""

    id: str = Field(..., description="Stable identity: nf-{company}-{number}")
    document_number: int
    number: str
    company_code: Optional[int] = None
    customer_name: str = ""
    customer_city: str = ""
    document_date: str = ""
    total_value: float = 0.0
    total_weight: float = 0.0
    items: list[InvoiceItem] = Field(default_factory=list)
    is_assigned: bool = False
    is_cancelled: bool = False
    fingerprint: Optional[str] = None


class PriorRecord(BaseModel):
    """What the store already knows about one document number."""

    number: str
    fingerprint: Optional[str] = None
    is_assigned: bool = False
    is_cancelled: bool = False


class SyncRun(BaseModel):
    """One row of the sync ledger."""

    id: str
    sync_type: SyncKind
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: SyncStatus = SyncStatus.RUNNING
    total_pages: int = 0
    total_invoices: int = 0
    error_message: Optional[str] = None


class SyncProgress(BaseModel):
    """Snapshot handed to the progress observer after every page."""

    run_id: str
    kind: SyncKind
    current_page: int
    total_pages: Optional[int] = None
    invoices_processed: int = 0
    percentage: float = 0.0
    eta_seconds: Optional[float] = None
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    cancelled_count: int = 0
    errors_count: int = 0
    skipped_pages: int = 0


class SyncSummary(BaseModel):
    """Net effect of one sync run."""

    run_id: Optional[str] = None
    kind: SyncKind = SyncKind.FULL
    status: SyncStatus = SyncStatus.COMPLETED
    inserted_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    cancelled_count: int = 0
    errors_count: int = 0
    last_sync_at: Optional[datetime] = None
    pages_fetched: int = 0
    total_pages: Optional[int] = None
    skipped_pages: list[int] = Field(default_factory=list)
    stopped_early: bool = False
    stop_reason: Optional[str] = None
