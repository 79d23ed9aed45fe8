from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Boolean, JSON, TIMESTAMP
from app.core.base import Base, TimestampedMixin

class User(Base, TimestampedMixin):
    display_name: Mapped[str | None] = mapped_column(String(120), nullable=True)

    # profile image (MediaAsset, role=profile); public URL is derived from the key
    profile_image_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    profile_image_processing_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    profile_image_processed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # protection settings, read-only for the ingestion pipeline
    enable_watermark: Mapped[bool] = mapped_column(Boolean, default=False)
    watermark_position: Mapped[str] = mapped_column(String(16), default="bottom-right")  # top-left | top-right | bottom-left | bottom-right
    protect_from_ai: Mapped[bool] = mapped_column(Boolean, default=False)
    protect_from_download: Mapped[bool] = mapped_column(Boolean, default=False)  # enforced by the web UI only
