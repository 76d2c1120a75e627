from __future__ import annotations

from omnicrm.handlers.base import (  # noqa: F401
    HandlerError,
    HandlerOutcome,
    HandlerRegistry,
    JobContext,
)
from omnicrm.handlers.embed import handle_embed
from omnicrm.handlers.extract_contacts import handle_extract_contacts
from omnicrm.handlers.normalize import handle_normalize
from omnicrm.models.job import JobType


def default_registry() -> HandlerRegistry:
    """One handler per JobType. Adding a job type means adding it here."""
    return HandlerRegistry(
        {
            JobType.NORMALIZE: handle_normalize,
            JobType.EXTRACT_CONTACTS: handle_extract_contacts,
            JobType.EMBED: handle_embed,
        }
    )
