"""Pydantic schemas for the fleet directory (car master and shop directory) API."""

from __future__ import annotations

from pydantic import BaseModel, field_validator


class CarRecord(BaseModel):
    """One car from the car master."""

    car_number: str
    car_mark: str | None = None
    car_type: str | None = None
    lessee_code: str | None = None
    raw_response: dict = {}

    @field_validator("car_number")
    @classmethod
    def normalize_car_number(cls, v: str) -> str:
        """Car numbers are compared without spaces, uppercased (GATX 12345 == GATX12345)."""
        return v.replace(" ", "").upper()


class ShopRecord(BaseModel):
    """One repair shop from the shop directory."""

    shop_code: str
    shop_name: str | None = None
    region: str | None = None
    is_active: bool = True
    raw_response: dict = {}
