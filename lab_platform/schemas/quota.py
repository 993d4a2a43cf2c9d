"""Quota schemas"""

from datetime import date
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class Requester(BaseModel):
    """User (optionally scoped to a team) on whose behalf quota is reserved"""
    user_id: int = Field(..., ge=1, description="Requesting user ID")
    team_id: Optional[int] = Field(None, ge=1, description="Team whose quota is the fallback")

    model_config = {"frozen": True}


class ResourceDemand(BaseModel):
    """Resources a single provisioning request asks to reserve"""
    cpu: int = Field(default=1, ge=1, le=64, description="CPU cores")
    memory_mb: int = Field(default=1024, ge=128, le=262144, description="Memory in MB")
    disk_mb: int = Field(default=10240, ge=512, le=4194304, description="Root disk in MB")

    model_config = {"frozen": True}


class QuotaCheckResult(BaseModel):
    """Result of evaluating a demand against the applicable quota"""
    allowed: bool
    exceeded_resource: Optional[str] = None
    quota_source: Optional[str] = None  # user, team or None when unlimited
    current_usage: Optional[Dict[str, int]] = None
    quota_limits: Optional[Dict[str, Optional[int]]] = None
    period_start: Optional[date] = None


class QuotaUsage(BaseModel):
    """Current-period usage and limits for a requester"""
    user_id: int
    team_id: Optional[int] = None
    period_start: str
    quota_source: Optional[str] = None
    cores_used: int = 0
    cores_limit: Optional[int] = None
    memory_mb_used: int = 0
    memory_mb_limit: Optional[int] = None
    storage_mb_used: int = 0
    disk_mb_limit: Optional[int] = None
    concurrent_containers: int = 0
    max_concurrent_containers: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "team_id": self.team_id,
            "period_start": self.period_start,
            "quota_source": self.quota_source,
            "cpu": {"used": self.cores_used, "limit": self.cores_limit},
            "memory": {"used_mb": self.memory_mb_used, "limit_mb": self.memory_mb_limit},
            "disk": {"used_mb": self.storage_mb_used, "limit_mb": self.disk_mb_limit},
            "containers": {
                "concurrent": self.concurrent_containers,
                "limit": self.max_concurrent_containers
            }
        }
