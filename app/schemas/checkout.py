from pydantic import BaseModel, Field


class DomainPurchaseRequest(BaseModel):
    domain_id: str = Field(min_length=1, max_length=200)
    success_url: str = Field(min_length=1, max_length=2000)
    cancel_url: str = Field(min_length=1, max_length=2000)


class DomainPurchaseResponse(BaseModel):
    sessionId: str
    url: str | None
