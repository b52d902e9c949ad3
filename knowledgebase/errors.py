"""Domain errors raised by the knowledge base services.

Blueprints translate these into JSON error responses using ``status_code``.
"""


class KnowledgeBaseError(Exception):
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class NotFoundError(KnowledgeBaseError):
    status_code = 404


class LockedError(KnowledgeBaseError):
    status_code = 409


class InvalidMoveError(KnowledgeBaseError):
    status_code = 400


class UnsupportedFileTypeError(KnowledgeBaseError):
    status_code = 415


class ExtractionError(KnowledgeBaseError):
    status_code = 422


class StorageError(KnowledgeBaseError):
    status_code = 502
