"""SQLAlchemy models for the widget catalog."""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Widget(Base):
    __tablename__ = "widgets"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    parts = relationship("WidgetPart", back_populates="widget", cascade="all, delete-orphan")


class WidgetPart(Base):
    __tablename__ = "widget_parts"

    id = Column(Integer, primary_key=True)
    widget_id = Column(Integer, ForeignKey("widgets.id"), nullable=False, index=True)
    label = Column(String(100), nullable=False)

    widget = relationship("Widget", back_populates="parts")
