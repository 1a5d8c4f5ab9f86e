# FILE: clinic_billing/schemas/service.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ServiceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=191)
    code: Optional[str] = Field(None, max_length=64)
    category: Optional[str] = Field(None, max_length=64)
    unit_price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    is_active: bool = True


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=191)
    code: Optional[str] = Field(None, max_length=64)
    category: Optional[str] = Field(None, max_length=64)
    unit_price: Optional[Decimal] = Field(None,
                                          ge=0,
                                          max_digits=12,
                                          decimal_places=2)
    is_active: Optional[bool] = None


class ServiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: Optional[str] = None
    name: str
    category: Optional[str] = None
    unit_price: Decimal
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
