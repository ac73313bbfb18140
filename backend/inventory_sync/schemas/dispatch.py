from typing import Any, Dict

from pydantic import BaseModel, Field


class DispatchRequest(BaseModel):
    method: str = Field(..., description="Case-sensitive operation name")
    params: Dict[str, Any] = Field(default_factory=dict)


class DispatchResponse(BaseModel):
    status: bool
    message: str
    data: Any = None
