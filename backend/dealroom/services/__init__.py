"""
Domain services
"""
from dealroom.core.events import EventBus
from dealroom.models.domain_event import EventType


def register_default_subscribers(bus: EventBus):
    """Attach the in-process consumers every engine instance runs"""
    from dealroom.services.settlement_service import on_usage_recorded

    bus.subscribe(EventType.USAGE_RECORDED.value, on_usage_recorded)
