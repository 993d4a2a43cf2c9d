"""Quota and Usage Counter Models"""

from sqlalchemy import (
    Column, Integer, BigInteger, Date, CheckConstraint, UniqueConstraint, Index
)

from lab_platform.models.base import BaseModel


class QuotaModel(BaseModel):
    """
    Quotas table holding per-user or per-team resource ceilings.

    A NULL limit means that resource is unlimited. Administrators own these
    rows; the reservation engine only reads them.
    """
    __tablename__ = "quotas"

    user_id = Column(Integer, nullable=True)
    team_id = Column(Integer, nullable=True)
    cores_limit = Column(Integer, nullable=True)
    memory_mb_limit = Column(BigInteger, nullable=True)
    disk_mb_limit = Column(BigInteger, nullable=True)
    max_concurrent_containers = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "user_id IS NOT NULL OR team_id IS NOT NULL",
            name="ck_quota_owner"
        ),
        Index("ix_quotas_user_id", "user_id"),
        Index("ix_quotas_team_id", "team_id"),
    )


class UsageCounterModel(BaseModel):
    """
    Usage Counters table: running totals per user per calendar day.

    Rows are created lazily on the first reservation attempt of a period.
    """
    __tablename__ = "usage_counters"

    user_id = Column(Integer, nullable=False)
    team_id = Column(Integer, nullable=True)
    period_start = Column(Date, nullable=False)
    cores_used = Column(Integer, nullable=False, default=0, server_default="0")
    memory_mb_used = Column(BigInteger, nullable=False, default=0, server_default="0")
    storage_mb_used = Column(BigInteger, nullable=False, default=0, server_default="0")
    concurrent_containers = Column(Integer, nullable=False, default=0, server_default="0")

    __table_args__ = (
        UniqueConstraint("user_id", "period_start", name="uk_usage_user_period"),
        CheckConstraint("cores_used >= 0", name="ck_usage_cores_non_negative"),
        CheckConstraint("memory_mb_used >= 0", name="ck_usage_memory_non_negative"),
        CheckConstraint("storage_mb_used >= 0", name="ck_usage_storage_non_negative"),
    )
