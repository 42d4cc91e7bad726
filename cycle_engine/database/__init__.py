from .base import Base
from .models import CycleConfiguration, CycleSnapshotRecord, CycleStatusRecord

__all__ = ["Base", "CycleConfiguration", "CycleSnapshotRecord", "CycleStatusRecord"]
