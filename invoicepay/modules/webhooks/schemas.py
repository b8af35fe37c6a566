from pydantic import BaseModel
from typing import Any, List, Optional


class AuditEntryOut(BaseModel):
    id: str
    timestamp: str
    type: str
    rail: str
    status: str
    invoice_id: Optional[str] = None
    merchant_id: Optional[str] = None
    message: Optional[str] = None
    data: Any = None


class AuditEntryList(BaseModel):
    count: int
    entries: List[AuditEntryOut]


class AuditClearResponse(BaseModel):
    success: bool = True
    message: str
