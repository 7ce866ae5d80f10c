from sqlalchemy import Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class CacheRow(Base):
    __tablename__ = "cache"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    data: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[float] = mapped_column(Float, index=True)
    tags: Mapped[str | None] = mapped_column(String(512), nullable=True, index=True)
    created_at: Mapped[float] = mapped_column(Float)
    access_count: Mapped[int] = mapped_column(Integer, default=0)
    last_accessed: Mapped[float] = mapped_column(Float)


class LocalRecord(Base):
    __tablename__ = "local_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation: Mapped[str] = mapped_column(String(64), index=True)
    record_key: Mapped[str] = mapped_column(String(256), index=True)
    search_text: Mapped[str] = mapped_column(Text, default="")
    payload: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[float] = mapped_column(Float, index=True)
