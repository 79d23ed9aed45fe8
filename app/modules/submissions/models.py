import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Float, ForeignKey, JSON, TIMESTAMP, Text
from app.core.base import Base, TimestampedMixin

class Submission(Base, TimestampedMixin):
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"), index=True)
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)

    # submission image (MediaAsset, role=submission)
    image_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    image_processing_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # {watermarked, compressed, format}
    image_processed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # preview crops centre on this point, in percent of width / height
    focal_point_x: Mapped[float | None] = mapped_column(Float, nullable=True)
    focal_point_y: Mapped[float | None] = mapped_column(Float, nullable=True)
