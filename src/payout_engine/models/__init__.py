"""SQLAlchemy ORM models."""

from payout_engine.models.base import Base, TimestampMixin
from payout_engine.models.settlement import CurrencyRate, SettlementRecord
from payout_engine.models.worker import (
    EarnedBadge,
    RequiredTraining,
    TrainingCompletion,
    WorkerProfile,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "CurrencyRate",
    "EarnedBadge",
    "RequiredTraining",
    "SettlementRecord",
    "TrainingCompletion",
    "WorkerProfile",
]
