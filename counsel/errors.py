class CounselError(Exception):
    """Base class for failures raised by the conversation core."""


class IncompleteAssessment(CounselError):
    """Scoring was requested with no answered questions."""


class PersistenceUnavailable(CounselError):
    """
    The storage collaborator is missing or a read/write failed.
    Callers log it and keep the chat usable.
    """


class ModelCallFailed(CounselError):
    """The language model could not produce a reply (network, quota, empty)."""


class UnsupportedOperation(CounselError):
    """The active storage scope does not offer this operation."""
