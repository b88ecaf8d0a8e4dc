"""Exception types shared by the outbox, broker, worker and ingestion layers."""


class IngestionError(Exception):
	"""Base class for every error raised by this service."""


class RetriableError(IngestionError):
	"""Transient failure; the poll cycle or reaper will try again."""


class StoreUnavailableError(RetriableError):
	pass


class PublishTimeoutError(RetriableError):
	pass


class QueueFullError(RetriableError):
	pass


class InvalidPayloadError(IngestionError):
	"""An outbox payload that cannot be stored as UTF-8 text."""


class PublishRejectedError(IngestionError):
	"""The broker definitively refused the message."""


class MalformedMessageError(IngestionError):
	pass


class FeedParseError(IngestionError):
	pass


class UnsupportedFeedTypeError(IngestionError):
	pass


class UnknownJobTypeError(IngestionError):
	pass


class SynchronizationError(IngestionError):
	pass


class ScheduleConfigurationError(IngestionError):
	pass
