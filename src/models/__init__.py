"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.user import AppUser
from src.models.device_token import DeviceToken
from src.models.referral import Referral
from src.models.campaign import Campaign
from src.models.notification_log import NotificationLog
from src.models.trigger import NotificationTrigger
from src.models.cron_health import CronHealthRecord

__all__ = [
    "AppUser",
    "DeviceToken",
    "Referral",
    "Campaign",
    "NotificationLog",
    "NotificationTrigger",
    "CronHealthRecord",
]
