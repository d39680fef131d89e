from typing import Optional

from pydantic import BaseModel


class Contractor(BaseModel):
    id: str
    phone: str
    business_name: Optional[str] = None
    email: Optional[str] = None
    trade: str = "plumbing"


class QuoteTemplate(BaseModel):
    business_name: str
    business_phone: str
    business_email: str = ""
    business_address: str = ""
    license_number: Optional[str] = None
    insurance_info: Optional[str] = None
    terms_and_conditions: str
    payment_terms: str
    warranty_info: Optional[str] = None
