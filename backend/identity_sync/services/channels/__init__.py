from .base import (
    Channel,
    ChannelNotConfiguredError,
    ChannelPushError,
    ChannelSyncEngine,
    ChannelSyncStats,
)
from .email_channel import MailchimpChannel
from .note_channel import HandwryttenChannel

__all__ = [
    "Channel",
    "ChannelNotConfiguredError",
    "ChannelPushError",
    "ChannelSyncEngine",
    "ChannelSyncStats",
    "MailchimpChannel",
    "HandwryttenChannel",
]
