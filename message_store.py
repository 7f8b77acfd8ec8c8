"""Crew messaging persistence over messages.json."""

import copy
import logging

import collectors
import config
from errors import BridgeError, MessageNotFound, ValidationError
from task_store import DocumentStore, generate_id

log = logging.getLogger(__name__)

MESSAGE_STATUSES = ('pending', 'acknowledged', 'completed')
MESSAGE_AGENTS = [
    'seven', 'geordi', 'uhura', 'spock', 'quark', 'data', 'belanna',
    'harry', 'icheb', 'tom', 'neelix', 'tuvok', 'doctor',
]


def default_document():
    return {'version': '1.0', 'lastUpdated': collectors.utc_now_iso(), 'messages': []}


def _agent(value, field):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{field} is required', code='MISSING_REQUIRED_FIELD')
    return value.strip().lower()


def build_message_patch(updates):
    if not isinstance(updates, dict):
        raise ValidationError('Updates must be an object')
    patch = {}
    if 'read' in updates:
        patch['read'] = bool(updates['read'])
    if 'status' in updates:
        if updates['status'] not in MESSAGE_STATUSES:
            raise ValidationError(f"Unknown status: {updates['status']}",
                                  details={'validStatuses': list(MESSAGE_STATUSES)})
        patch['status'] = updates['status']
    for field in ('subject', 'content', 'type', 'taskId'):
        if field in updates:
            value = updates[field]
            if value is not None and not isinstance(value, str):
                raise ValidationError(f'{field} must be a string')
            patch[field] = value
    return patch


class MessageStore(DocumentStore):
    collection_key = 'messages'
    tag = 'MESSAGES'

    def __init__(self, path=config.MESSAGES_FILE, writer=None, backup_dir=config.BACKUP_DIR, **kwargs):
        super().__init__(path, writer=writer, backup_dir=backup_dir, **kwargs)

    def default_document(self):
        return default_document()

    @staticmethod
    def _find(doc, message_id):
        for message in doc['messages']:
            if message.get('id') == message_id:
                return message
        raise MessageNotFound(message_id)

    def list_messages(self, agent=None, sender=None, status=None, unread=False):
        """Filtered messages, newest first."""
        messages = self.load()['messages']
        if agent:
            messages = [m for m in messages if m.get('to') == agent.lower()]
        if sender:
            messages = [m for m in messages if m.get('from') == sender.lower()]
        if status:
            messages = [m for m in messages if m.get('status') == status]
        if unread:
            messages = [m for m in messages if not m.get('read')]
        return sorted(messages, key=lambda m: m.get('timestamp') or '', reverse=True)

    def get(self, message_id):
        return self._find(self.load(), message_id)

    def create(self, sender, to, subject, content='', msg_type='request', task_id=None):
        to = _agent(to, 'to')
        if not isinstance(subject, str) or not subject.strip():
            raise ValidationError('to and subject are required', code='MISSING_REQUIRED_FIELD')
        message = {
            'id': generate_id('msg'),
            'from': _agent(sender or 'seven', 'from'),
            'to': to,
            'type': msg_type or 'request',
            'subject': subject,
            'content': content or '',
            'timestamp': collectors.utc_now_iso(),
            'read': False,
            'status': 'pending',
            'taskId': task_id,
            'replies': [],
        }
        with self._mutate(f'create message {message["id"]}') as doc:
            doc['messages'].append(message)
        log.info('[MESSAGES] %s -> %s: %s', message['from'], to, subject)
        return copy.deepcopy(message)

    def update(self, message_id, updates):
        patch = build_message_patch(updates)
        with self._mutate(f'update message {message_id}') as doc:
            message = self._find(doc, message_id)
            message.update(patch)
            message['updatedAt'] = collectors.utc_now_iso()
            result = copy.deepcopy(message)
        return result

    def delete(self, message_id):
        with self._mutate(f'delete message {message_id}') as doc:
            message = self._find(doc, message_id)
            doc['messages'].remove(message)
        log.info('[MESSAGES] deleted %s', message_id)
        return message

    def reply(self, message_id, sender, text, complete=False):
        if not isinstance(text, str) or not text.strip():
            raise ValidationError('Reply text is required', code='MISSING_REQUIRED_FIELD')
        reply = {'from': (sender or 'system').lower(), 'text': text, 'timestamp': collectors.utc_now_iso()}
        with self._mutate(f'reply to {message_id}') as doc:
            message = self._find(doc, message_id)
            message.setdefault('replies', []).append(reply)
            message['status'] = 'completed' if complete else 'acknowledged'
            message['updatedAt'] = reply['timestamp']
        return reply

    def counts(self, agents=None):
        messages = self.load()['messages']
        result = {
            'total': len(messages),
            'unread': sum(1 for m in messages if not m.get('read')),
            'pending': sum(1 for m in messages if m.get('status') == 'pending'),
            'byAgent': {},
        }
        for agent in agents or MESSAGE_AGENTS:
            mine = [m for m in messages if m.get('to') == agent]
            result['byAgent'][agent] = {
                'total': len(mine),
                'unread': sum(1 for m in mine if not m.get('read')),
                'pending': sum(1 for m in mine if m.get('status') == 'pending'),
            }
        return result


def create_task_from_message(messages, tasks, message_id):
    """Open a task for a message and back-link it.

    The two documents are written separately. When the back-link fails the
    task is kept and the result reports ``linked: False``.
    """
    message = messages.get(message_id)
    task = tasks.create(
        message.get('subject') or f'Message {message_id}',
        message.get('content') or f'Created from message {message_id}',
        assignee=message.get('to'),
        category='general',
        priority='medium' if message.get('type') == 'request' else 'low',
    )
    try:
        message = messages.update(message_id, {'taskId': task['id']})
        linked = True
    except BridgeError as exc:
        log.error('[MESSAGES] task %s created but link to %s failed: %s', task['id'], message_id, exc)
        linked = False
    log.info('[MESSAGES] task %s created from message %s', task['id'], message_id)
    return {'message': message, 'task': task, 'linked': linked}
