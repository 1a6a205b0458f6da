"""Pydantic schemas for API."""
from pydantic import BaseModel, ConfigDict, Field


class WidgetCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class WidgetResponse(BaseModel):
    id: int
    name: str
    model_config = ConfigDict(from_attributes=True)


class WidgetPartCreate(BaseModel):
    label: str = Field(min_length=1, max_length=100)


class WidgetPartResponse(BaseModel):
    id: int
    widget_id: int
    label: str
    model_config = ConfigDict(from_attributes=True)
