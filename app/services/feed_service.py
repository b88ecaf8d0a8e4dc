import logging
from datetime import datetime
from typing import Optional

from app.models.outbox import OutboxEntry
from app.schemas.feed import FeedDocument
from app.schemas.job import JobType
from app.services.outbox_service import OutboxService

logger = logging.getLogger(__name__)


class FeedSubmissionService:
	"""Producer side: a feed arrives, an outbox entry records the work to do."""

	def __init__(self, outbox: OutboxService):
		self.outbox = outbox

	def submit(self, document: FeedDocument, available_at: Optional[datetime] = None) -> OutboxEntry:
		entry = self.outbox.enqueue(
			JobType.FEED_INGESTION.value,
			document.model_dump_json(by_alias=True, exclude_none=True),
			available_at=available_at,
		)
		logger.info(f"Feed {document.feed_type.value} from {document.source_name} queued as {entry.id}")
		return entry
