"""Knowledge base documents and chatbot instructions managed from the admin dashboard."""

import logging
import os

import bleach

from services.errors import ValidationError
from services.store import RecordStore, utc_now_iso

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'.txt', '.md', '.csv', '.json'}
MAX_FILENAME_LENGTH = 255


def save_document(store: RecordStore, payload: dict) -> dict:
    """Validate and insert one knowledge document; returns the stored row.

    Missing filename, content or fileType is rejected before anything is
    written.
    """
    filename = payload.get('filename')
    content = payload.get('content')
    file_type = payload.get('fileType')
    if not filename or not content or not file_type:
        raise ValidationError(
            'Filename, content, and fileType are required',
            details='Please ensure all required fields are provided',
        )

    file_size = payload.get('fileSize')
    if file_size is None:
        file_size = len(content.encode('utf-8'))

    logger.info('Uploading knowledge file: %s, type: %s, size: %s', filename, file_type, file_size)
    document = store.insert('knowledge_base', {
        'filename': bleach.clean(filename, strip=True)[:MAX_FILENAME_LENGTH],
        'file_type': bleach.clean(file_type, strip=True),
        'content': content,
        'file_size': file_size,
        'status': 'active',
        'upload_date': utc_now_iso(),
    })
    logger.info('Knowledge file uploaded successfully: %s', document.get('id'))
    return document


def document_from_upload(file_storage) -> dict:
    """Build a save_document payload from an admin form upload."""
    filename = file_storage.filename or ''
    extension = os.path.splitext(filename)[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise ValidationError(
            'Unsupported file type',
            details='Upload a .txt, .md, .csv or .json file',
        )
    raw = file_storage.read()
    try:
        content = raw.decode('utf-8')
    except UnicodeDecodeError as exc:
        raise ValidationError('File must be UTF-8 text', details=str(exc)) from exc
    return {
        'filename': filename,
        'content': content,
        'fileType': file_storage.mimetype or 'text/plain',
        'fileSize': len(raw),
    }


def list_documents(store: RecordStore) -> list:
    return store.select('knowledge_base', order='-upload_date')


def delete_document(store: RecordStore, document_id: str) -> int:
    return store.delete('knowledge_base', {'id': document_id})


# ===== INSTRUCTIONS =====

def _parse_priority(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError('Priority must be a whole number') from exc


def list_instructions(store: RecordStore) -> list:
    return store.select('chatbot_instructions', order='priority')


def create_instruction(store: RecordStore, text: str, priority=0) -> dict:
    text = (text or '').strip()
    if not text:
        raise ValidationError('Instruction text is required')
    return store.insert('chatbot_instructions', {
        'instruction_text': text,
        'priority': _parse_priority(priority),
        'is_active': True,
        'created_at': utc_now_iso(),
        'updated_at': utc_now_iso(),
    })


def update_instruction(store: RecordStore, instruction_id: str, text: str, priority) -> int:
    text = (text or '').strip()
    if not text:
        raise ValidationError('Instruction text is required')
    return store.update(
        'chatbot_instructions',
        {'instruction_text': text, 'priority': _parse_priority(priority), 'updated_at': utc_now_iso()},
        {'id': instruction_id},
    )


def toggle_instruction(store: RecordStore, instruction_id: str) -> bool:
    """Flip is_active; returns the new value."""
    row = store.first('chatbot_instructions', {'id': instruction_id})
    if row is None:
        raise ValidationError('Instruction not found')
    active = not bool(row.get('is_active'))
    store.update('chatbot_instructions', {'is_active': active, 'updated_at': utc_now_iso()}, {'id': instruction_id})
    return active
