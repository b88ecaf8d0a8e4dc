from typing import Callable, Dict, Optional

from app.broker.dead_letter import DeadLetterReprocessor
from app.config import Settings
from app.services.dispatcher import OutboxDispatcher, OutboxReaper
from app.workers.scheduler import TriggerDescriptor

OUTBOX_DISPATCH = "OUTBOX_DISPATCH"
OUTBOX_REAPER = "OUTBOX_REAPER"
DEAD_LETTER_REPROCESS = "DEAD_LETTER_REPROCESS"


def default_trigger_descriptors(config: Settings) -> Dict[str, TriggerDescriptor]:
	"""Startup values; a RedisTriggerSource may override any field at runtime."""
	tz = config.SCHEDULER_TIMEZONE
	return {
		OUTBOX_DISPATCH: TriggerDescriptor(OUTBOX_DISPATCH, True, config.OUTBOX_DISPATCH_SCHEDULE, tz),
		OUTBOX_REAPER: TriggerDescriptor(OUTBOX_REAPER, True, config.OUTBOX_REAPER_SCHEDULE, tz),
		DEAD_LETTER_REPROCESS: TriggerDescriptor(
			DEAD_LETTER_REPROCESS,
			config.DEAD_LETTER_REPROCESS_ENABLED,
			config.DEAD_LETTER_REPROCESS_SCHEDULE,
			tz,
		),
	}


def build_scheduled_jobs(
		dispatcher: OutboxDispatcher,
		reaper: OutboxReaper,
		reprocessor: Optional[DeadLetterReprocessor] = None,
) -> Dict[str, Callable[[], object]]:
	jobs: Dict[str, Callable[[], object]] = {
		OUTBOX_DISPATCH: dispatcher.run_once,
		OUTBOX_REAPER: reaper.run_once,
	}
	if reprocessor is not None:
		jobs[DEAD_LETTER_REPROCESS] = reprocessor.run_once
	return jobs
