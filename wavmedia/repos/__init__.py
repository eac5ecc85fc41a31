from wavmedia.repos.notification_repo import NotificationRepo
from wavmedia.repos.stem_repo import StemRepo
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.repos.user_repo import UserRepo

__all__ = ["NotificationRepo", "StemRepo", "TrackRepo", "UserRepo"]
