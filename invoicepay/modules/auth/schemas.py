from pydantic import BaseModel
from uuid import UUID


class AuthContext(BaseModel):
    """Operator identity resolved from the bearer token."""
    merchant_id: UUID
    is_admin: bool = False
