"""
Postmortem model.

Retrospective reconstruction of a terminal scheduling request, one row per
request (re-running the postmortem replaces it).
"""
from sqlalchemy import String, Integer, Float, Boolean, JSON, Text, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from meetingflow.models.base import Base, IdMixin, TimestampMixin


class Postmortem(Base, IdMixin, TimestampMixin):
    __tablename__ = "scheduling_postmortems"

    request_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("scheduling_requests.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True
    )
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    total_actions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inbound_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outbound_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    follow_up_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exchanges_by_channel: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    channels_used: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    fallback_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    time_to_outcome_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    mean_gap_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_gap_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    timeline: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    efficiency_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    key_insight: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self):
        return f"<Postmortem(request_id={self.request_id}, outcome={self.outcome})>"
