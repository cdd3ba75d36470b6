"""
SQLite data models (plain dataclasses) for OptiFlow.
"""

from dataclasses import dataclass, field
from typing import Optional

from optiflow.core.payloads import OptimizationPayload


@dataclass
class Job:
    id: int
    subject_id: int
    status: str = "pending"
    priority: str = "normal"
    target_score: int = 90
    current_score: int = 0
    initial_score: int = 0
    iterations: int = 0
    attempts: int = 0
    payload: Optional[OptimizationPayload] = None
    result: Optional[dict] = None
    error: Optional[str] = None
    scheduled_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class WebhookDeliveryItem:
    id: int
    capture_id: int
    destination_url: str
    payload: dict = field(default_factory=dict)
    attempts: int = 0
    status: str = "pending"
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    next_retry_at: Optional[str] = None


@dataclass
class Subject:
    id: int
    title: str
    url: Optional[str] = None
    status: str = "publish"
    type: str = "post"
    seo_score: int = 0


@dataclass
class User:
    id: int
    display_name: str
    email: Optional[str] = None
    role: Optional[str] = None


@dataclass
class Capture:
    id: int
    capture_type: str
    user_id: Optional[int] = None
    subject_id: Optional[int] = None
    capture_data: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
