from flask import Flask, request, Response, jsonify
import logging
import sys
from typing import Optional
from twilio.twiml.messaging_response import MessagingResponse

from .services.analysis import AnalysisService
from .services.chat import ChatService
from .services.context import ContextService
from .services.profiles import ProfileService
from .services.sms import SMSService
from .services.storage import StorageService
from .services.welcome import WelcomeService
from .sms_handler import SMSHandler
from lib.config import Settings, get_settings
from lib.database import create_database_client
from lib.openai_client import OpenAIClient
from lib.twilio_client import TwilioClient

# Configure detailed logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
    force=True  # Ensure our config takes precedence
)

# Create logger for this file
logger = logging.getLogger(__name__)

def build_services(settings: Settings):
    """Create the provider clients and wire the pipeline services"""
    logger.info("Initializing Supabase client...")
    storage_service = StorageService(
        supabase_client=create_database_client(),
        event_ttl_hours=settings.event_dedup_ttl_hours
    )

    logger.info("Initializing OpenAI client...")
    openai_client = OpenAIClient()

    logger.info("Initializing Twilio client...")
    sms_service = SMSService(twilio_client=TwilioClient())

    sms_handler = SMSHandler(
        storage_service=storage_service,
        profile_service=ProfileService(storage_service, settings.conversations_id_prefix),
        context_service=ContextService(storage_service),
        analysis_service=AnalysisService(openai_client),
        chat_service=ChatService(openai_client),
        sms_service=sms_service,
        request_timeout=settings.request_timeout_seconds,
        dispatch_failure_policy=settings.dispatch_failure_policy
    )
    welcome_service = WelcomeService(
        storage_service=storage_service,
        sms_service=sms_service,
        message_delay=settings.welcome_message_delay_seconds
    )
    logger.info("All services initialized successfully")
    return sms_handler, welcome_service

def empty_twiml(status: int = 200) -> Response:
    """Replies go out through the REST API, so Twilio gets an empty TwiML document"""
    return Response(str(MessagingResponse()), status=status, mimetype='text/xml')

def create_app(sms_handler: Optional[SMSHandler] = None, welcome_service: Optional[WelcomeService] = None) -> Flask:
    if sms_handler is None or welcome_service is None:
        sms_handler, welcome_service = build_services(get_settings())

    app = Flask(__name__)

    @app.route("/test", methods=['GET'])
    def test():
        """Test endpoint to verify server is running"""
        return jsonify({
            "status": "ok",
            "message": "Server is running"
        })

    @app.route("/sms", methods=['POST'])
    async def sms_webhook():
        """Handle incoming SMS and WhatsApp webhooks from Twilio"""
        try:
            form_data = request.form.to_dict()
            logger.info(f"Messaging webhook from {form_data.get('From')} ({form_data.get('MessageSid')})")

            result = await sms_handler.handle_incoming_message(form_data)
            return empty_twiml(200 if result.get('success') else 500)

        except Exception as e:
            logger.error(f"Webhook error: {str(e)}", exc_info=True)
            return empty_twiml(500)

    @app.route("/conversations-webhook", methods=['POST'])
    async def conversations_webhook():
        """Handle Twilio Conversations events"""
        try:
            form_data = request.form.to_dict()
            logger.info(f"Conversations webhook: {form_data.get('EventType')} on {form_data.get('ConversationSid')}")

            result = await sms_handler.handle_incoming_message(form_data)
            if not result.get('success'):
                return jsonify({'error': 'Failed to process conversation message'}), 500
            return jsonify(result)

        except Exception as e:
            logger.error(f"Conversations webhook error: {str(e)}", exc_info=True)
            return jsonify({'error': 'Failed to process conversation message'}), 500

    @app.route("/conversations/start", methods=['POST'])
    async def start_conversation():
        data = request.get_json(silent=True) or {}
        if not data.get('user_id'):
            return jsonify({'error': 'user_id is required'}), 400

        result = await sms_handler.start_conversation(data['user_id'])
        if 'error' in result:
            return jsonify({'error': result['error']}), result['status_code']
        return jsonify({
            'message': 'Conversation started successfully!',
            'conversation_id': result['conversation_id'],
            'channel': result['channel']
        })

    @app.route("/users/<user_id>/welcome", methods=['POST'])
    async def send_welcome(user_id: str):
        data = request.get_json(silent=True) or {}
        try:
            result = await welcome_service.send_welcome_sequence(
                user_id,
                trigger=data.get('trigger', 'manual'),
                force_resend=bool(data.get('force_resend', False))
            )
            return jsonify(result.model_dump()), 200 if result.success else 500
        except Exception as e:
            logger.error(f"Welcome sequence error for user {user_id}: {str(e)}", exc_info=True)
            return jsonify({'error': 'Failed to send welcome messages'}), 500

    @app.route("/conversations/<conversation_id>/messages", methods=['GET'])
    async def conversation_messages(conversation_id: str):
        limit = request.args.get('limit', 50, type=int)
        newest_first = request.args.get('order', 'desc') != 'asc'
        try:
            messages = await sms_handler.get_history(conversation_id, limit=limit, newest_first=newest_first)
        except Exception as e:
            logger.error(f"History error for conversation {conversation_id}: {str(e)}", exc_info=True)
            return jsonify({'error': 'Failed to load messages'}), 500
        return jsonify([message.model_dump(mode='json') for message in messages])

    @app.route("/users/<user_id>/sentiment-history", methods=['GET'])
    async def sentiment_history(user_id: str):
        limit = request.args.get('limit', 30, type=int)
        try:
            entries = await sms_handler.get_sentiment_history(user_id, limit=limit)
        except Exception as e:
            logger.error(f"Sentiment history error for user {user_id}: {str(e)}", exc_info=True)
            return jsonify({'error': 'Failed to load sentiment history'}), 500
        return jsonify([
            {
                'date': entry.created_at.isoformat() if entry.created_at else None,
                'sentiment': entry.sentiment,
                'emotions': entry.emotions,
                'intensity': entry.intensity
            }
            for entry in entries
        ])

    return app
