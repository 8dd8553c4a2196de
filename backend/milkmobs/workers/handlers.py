"""Job handlers for the orchestrated entry points."""
import asyncio
import logging

from milkmobs.services.mob_service import MobService

logger = logging.getLogger(__name__)


async def handle_pipeline(
    service: MobService,
    item_id: str,
    cancel_event: asyncio.Event,
    **kwargs
) -> dict:
    """
    Handle one pipeline execution for a submitted item.

    Args:
        service: Mob service
        item_id: Content item id
        cancel_event: Set to stop the execution at its next stage boundary

    Returns:
        Run outcome dictionary
    """
    outcome = await service.run_pipeline(item_id, cancel_event=cancel_event)
    return outcome.to_dict()


async def handle_rebuild(
    service: MobService,
    **kwargs
) -> dict:
    """
    Handle a scheduled full-corpus community rebuild.

    Returns:
        Rebuild report dictionary
    """
    report = await service.rebuild_communities()
    return report.to_dict()
