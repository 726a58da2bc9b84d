# api/newsletter.py
"""
Admin newsletter sending API
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from middleware.security import require_admin
from services.container import NewsletterServices
from tasks.email_sender import drive_newsletter_send

newsletter_bp = Blueprint('newsletter', __name__)
logger = logging.getLogger(__name__)


def _services() -> NewsletterServices:
    return current_app.extensions['newsletter']


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@newsletter_bp.route('/send', methods=['POST'])
@require_admin
def send_newsletter():
    """Prepare a newsletter for chunked sending, optionally driving it in the background"""
    data = _json_body()
    newsletter_id = data.get('newsletterId')

    plan = _services().sending.prepare_send(
        newsletter_id,
        data.get('html'),
        data.get('subject'),
        data.get('emailText'),
        data.get('settings')
    )

    if data.get('background'):
        task = drive_newsletter_send.delay(
            newsletter_id, data.get('html'), data.get('subject'),
            plan['emailChunks'], data.get('settings')
        )
        logger.info(f"Newsletter {newsletter_id} queued for background sending (task {task.id})")
        plan.update({'queued': True, 'taskId': task.id})
        return jsonify(plan), 202

    return jsonify(plan)


@newsletter_bp.route('/send-chunk', methods=['POST'])
@require_admin
def send_chunk():
    """Send one chunk of a prepared newsletter"""
    data = _json_body()
    result = _services().sending.process_chunk(
        data.get('newsletterId'),
        data.get('html'),
        data.get('subject'),
        data.get('chunkEmails'),
        data.get('chunkIndex'),
        data.get('settings')
    )
    return jsonify(result)


@newsletter_bp.route('/retry-chunk', methods=['POST'])
@require_admin
def retry_chunk():
    """Retry one chunk of previously failed recipients"""
    data = _json_body()
    result = _services().retry.retry_chunk(
        data.get('newsletterId'),
        data.get('html'),
        data.get('subject'),
        data.get('chunkEmails'),
        data.get('chunkIndex'),
        data.get('settings')
    )
    return jsonify(result)


@newsletter_bp.route('/send-status/<newsletter_id>', methods=['GET'])
@require_admin
def send_status(newsletter_id):
    status = _services().sending.get_send_status(newsletter_id)
    if status['status'] == 'error':
        return jsonify(status), 500
    return jsonify(status)


@newsletter_bp.route('/settings', methods=['GET'])
@require_admin
def get_settings():
    return jsonify(_services().settings.get_settings().to_dict())


@newsletter_bp.route('/settings', methods=['PUT'])
@require_admin
def update_settings():
    updated = _services().settings.update_settings(_json_body())
    return jsonify(updated.to_dict())
