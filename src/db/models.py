"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class IngredientAnalysisRecord(Base):
    """Last computed analysis for an ingredient, keyed by normalized name."""

    __tablename__ = "ingredient_analyses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ingredient_name: Mapped[str] = mapped_column(
        String(255), unique=True, index=True, nullable=False
    )  # normalized: lowercased, trimmed
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)  # as first submitted
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # safe, caution, banned
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    edge_cases: Mapped[str] = mapped_column(Text, nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    ewg_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ewg_data_availability: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    research_sources: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    suggested_matches: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    needs_review: Mapped[bool] = mapped_column(default=False, nullable=False)
    analysis_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )
    last_analyzed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
