"""Error taxonomy for the parse pipeline.

Every error raised by the queue, the worker or the analyzer derives from
``ParserError`` so callers can tell pipeline failures apart from bugs.
"""


class ParserError(Exception):
    """Base class for all pipeline errors."""


class InvalidInput(ParserError):
    """Source file is unreadable or not the expected container format."""


class InputMissing(ParserError):
    """Referenced file no longer exists at processing time."""


class RenderFailure(ParserError):
    """External rasterization failed or timed out."""


class JobTimeout(RenderFailure):
    """A processing attempt ran past its time limit."""


class PersistenceFailure(ParserError):
    """Manifest, error record or job state could not be written."""


class StalledLease(ParserError):
    """A leased job stopped reporting and was reclaimed."""


class DuplicateId(ParserError):
    """A job with this id already exists and has not finished."""


class JobNotFound(ParserError):
    """No job is stored under the requested id."""


class JobNotActive(ParserError):
    """The job is not held under an active lease by the caller."""


class ResultNotReady(ParserError):
    """The job has not completed, so no manifest is available."""
