"""Database models."""

from kcs.models.asset import Asset, AssetType
from kcs.models.event import Event
from kcs.models.image_analysis_audit import ImageAnalysisAudit
from kcs.models.order import Order, OrderBrief, OrderStatus
from kcs.models.partner import Partner
from kcs.models.print_config import PrintConfig
from kcs.models.provider_call import ProviderCall
from kcs.models.story import PrintStatus, Story, StoryStatus, StoryVersion
from kcs.models.webhook_outbox import OutboxStatus, WebhookOutbox

__all__ = [
    "Asset",
    "AssetType",
    "Event",
    "ImageAnalysisAudit",
    "Order",
    "OrderBrief",
    "OrderStatus",
    "OutboxStatus",
    "Partner",
    "PrintConfig",
    "PrintStatus",
    "ProviderCall",
    "Story",
    "StoryStatus",
    "StoryVersion",
    "WebhookOutbox",
]
