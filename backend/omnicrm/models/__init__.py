from __future__ import annotations

from omnicrm.models.contact import Contact, ContactIdentity  # noqa: F401
from omnicrm.models.embedding import Embedding  # noqa: F401
from omnicrm.models.interaction import Interaction  # noqa: F401
from omnicrm.models.job import Job  # noqa: F401
from omnicrm.models.raw_event import RawEvent  # noqa: F401
