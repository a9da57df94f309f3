"""
Wiring for the annotation core: one record store, one audit log and one set
of writer locks shared by all four components.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from util.logging import logger

from .core.config import VERSION, debug_enabled, get_record_store, validate_config
from .core.consensus import ConsensusPool
from .core.entries import VersionedEntryStore
from .core.events import EventLog
from .core.locks import KeyedLocks
from .core.moderation import ModerationGate
from .core.records import IRecordStore
from .core.scopes import ScopeRegistry
from .core.suggestions import SuggestionWorkflow


@dataclass
class Services:
    store: IRecordStore
    events: EventLog
    scopes: ScopeRegistry
    entries: VersionedEntryStore
    pool: ConsensusPool
    suggestions: SuggestionWorkflow
    moderation: ModerationGate


def build_services(store: Optional[IRecordStore] = None,
                   clock: Callable[[], datetime] = datetime.now) -> Services:
    """Build the core around store, or the configured backend when none is given."""
    for issue in validate_config():
        logger.warning(f"Configuration issue: {issue}")

    if debug_enabled():
        logger.logger.setLevel(logging.DEBUG)

    store = store if store is not None else get_record_store()
    logger.debug(f"Building lorekeeper {VERSION} core on {type(store).__name__}")
    locks = KeyedLocks()
    events = EventLog(store, clock)
    scopes = ScopeRegistry(store, clock, events)
    entries = VersionedEntryStore(store, scopes, clock, events, locks)
    pool = ConsensusPool(store, clock, events, locks)
    suggestions = SuggestionWorkflow(store, scopes, entries, pool, clock, events, locks)
    moderation = ModerationGate(store, scopes, clock, events, locks)

    return Services(
        store=store,
        events=events,
        scopes=scopes,
        entries=entries,
        pool=pool,
        suggestions=suggestions,
        moderation=moderation
    )
