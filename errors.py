"""Error taxonomy shared by the stores, collaborators and the HTTP boundary."""

ERR_INVALID_INPUT = 'INVALID_INPUT'
ERR_INVALID_JSON = 'INVALID_JSON'
ERR_MISSING_REQUIRED_FIELD = 'MISSING_REQUIRED_FIELD'
ERR_NOT_FOUND = 'NOT_FOUND'
ERR_TASK_NOT_FOUND = 'TASK_NOT_FOUND'
ERR_MESSAGE_NOT_FOUND = 'MESSAGE_NOT_FOUND'
ERR_CONFLICT = 'CONFLICT'
ERR_OPERATION_FAILED = 'OPERATION_FAILED'
ERR_UNAVAILABLE = 'COLLABORATOR_UNAVAILABLE'


class BridgeError(Exception):
    """Base error carrying an HTTP status and a machine-readable code."""

    status_code = 500
    code = ERR_OPERATION_FAILED

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self):
        body = {'error': self.message, 'code': self.code}
        body.update(self.details)
        return body


class CollaboratorUnavailable(BridgeError):
    """An external command, file or endpoint failed or timed out."""

    status_code = 503
    code = ERR_UNAVAILABLE


class NotFound(BridgeError):
    status_code = 404
    code = ERR_NOT_FOUND


class TaskNotFound(NotFound):
    code = ERR_TASK_NOT_FOUND

    def __init__(self, task_id):
        super().__init__('Task not found', details={'taskId': task_id})
        self.task_id = task_id


class MessageNotFound(NotFound):
    code = ERR_MESSAGE_NOT_FOUND

    def __init__(self, message_id):
        super().__init__('Message not found', details={'messageId': message_id})
        self.message_id = message_id


class ValidationError(BridgeError):
    status_code = 400
    code = ERR_INVALID_INPUT


class MalformedInput(ValidationError):
    code = ERR_INVALID_JSON

    def __init__(self, message='Invalid JSON'):
        super().__init__(message)


class PersistenceBlocked(BridgeError):
    """The safe writer refused to overwrite the document."""

    status_code = 409
    code = ERR_CONFLICT


class PersistenceFailed(BridgeError):
    status_code = 500
    code = ERR_OPERATION_FAILED
