from wavmedia.models.base import Base
from wavmedia.models.enums import AudioFormat, ConversionStatus, SourceFormat, TrackStatus
from wavmedia.models.notification import Notification
from wavmedia.models.track import Stem, Track
from wavmedia.models.user import User

__all__ = [
    "Base",
    "AudioFormat",
    "ConversionStatus",
    "SourceFormat",
    "TrackStatus",
    "Notification",
    "Stem",
    "Track",
    "User",
]
