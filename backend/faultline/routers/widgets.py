"""Widget endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..guards import add_method_guard
from ..models import Widget, WidgetPart
from ..schemas import WidgetCreate, WidgetPartCreate, WidgetPartResponse, WidgetResponse

router = APIRouter(prefix="/widgets", tags=["widgets"])


@router.get("", response_model=list[WidgetResponse])
def list_widgets(db: Session = Depends(get_db)):
    """List widgets by name."""
    return db.query(Widget).order_by(Widget.name).all()


@router.post("", response_model=WidgetResponse, status_code=201)
def create_widget(payload: WidgetCreate, db: Session = Depends(get_db)):
    """Create a widget. Duplicate names surface as 409 from the error layer."""
    widget = Widget(name=payload.name)
    db.add(widget)
    db.commit()
    db.refresh(widget)
    return widget


add_method_guard(router, "", ["GET", "POST"])


@router.post("/{widget_id}/parts", response_model=WidgetPartResponse, status_code=201)
def add_widget_part(widget_id: int, payload: WidgetPartCreate, db: Session = Depends(get_db)):
    # No existence check: a missing widget is reported by the foreign key.
    part = WidgetPart(widget_id=widget_id, label=payload.label)
    db.add(part)
    db.commit()
    db.refresh(part)
    return part
