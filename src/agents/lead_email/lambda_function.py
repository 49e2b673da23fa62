"""AWS Lambda handler for chat lead notification emails.

Triggered two ways:
- Lambda Function URL POSTs from the chat widget (idle, pagehide, chat_closed)
- Direct invocations from EventBridge Scheduler carrying ``server_retry``
"""

import json
import logging
from typing import Any, Dict, Optional

import boto3

from src.common.bedrock_client import BedrockError, StandardizedBedrockClient
from src.common.errors import ConfigurationError, InvalidRequestError
from src.common.http import decode_body, empty_response, get_http_method, is_http_event, json_response
from src.storage.lead_attribution import LeadAttributionStore
from src.storage.lead_dedupe import DynamoLeaseStore, LeadLeaseManager
from src.storage.message_links import MessageLinkStore

from .config import LeadEmailSettings
from .email_delivery import SesTransport
from .lead_summary import LeadSummarizer
from .pipeline import LeadEmailDependencies, LeadEmailPipeline, parse_lead_request
from .retry_scheduler import LeadRetryScheduler
from .transcript import ChatKitThreadsClient

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Built once per cold start
_pipeline: Optional[LeadEmailPipeline] = None


def build_dependencies(settings: LeadEmailSettings, context: Any = None) -> LeadEmailDependencies:
    """Construct AWS and HTTP collaborators from settings.

    Optional capabilities are left as None when their configuration is absent.
    """
    leases = LeadLeaseManager(
        DynamoLeaseStore(settings.dedupe_table_name),
        lease_seconds=settings.lease_seconds,
        cooldown_seconds=settings.error_cooldown_seconds,
        ttl_days=settings.dedupe_ttl_days,
    )

    summarizer = None
    if settings.summarizer_configured:
        try:
            summarizer = LeadSummarizer(
                StandardizedBedrockClient(
                    model_id=settings.bedrock_model_id,
                    inference_profile_arn=settings.bedrock_inference_profile_arn,
                    region=settings.aws_region,
                )
            )
        except BedrockError as e:
            logger.error(f"Summarizer unavailable: {e}")
    else:
        logger.warning("No Bedrock model configured; every lead will be reported as not ready")

    scheduler = None
    target_arn = settings.retry_target_arn or getattr(context, "invoked_function_arn", None)
    if settings.retry_scheduler_role_arn and target_arn:
        scheduler = LeadRetryScheduler(
            boto3.client("scheduler", region_name=settings.aws_region),
            target_arn=target_arn,
            role_arn=settings.retry_scheduler_role_arn,
            group_name=settings.retry_schedule_group,
        )

    attribution_store = None
    if settings.attribution_table_name:
        attribution_store = LeadAttributionStore(
            settings.attribution_table_name, ttl_days=settings.attribution_ttl_days
        )

    message_links = None
    if settings.message_link_table_name:
        message_links = MessageLinkStore(
            settings.message_link_table_name,
            base_url=settings.message_link_base_url,
            ttl_days=settings.message_link_ttl_days,
        )

    return LeadEmailDependencies(
        leases=leases,
        threads=ChatKitThreadsClient(settings.openai_api_key),
        transport=SesTransport(boto3.client("ses", region_name=settings.aws_region)),
        summarizer=summarizer,
        scheduler=scheduler,
        attribution_store=attribution_store,
        message_links=message_links,
    )


def get_pipeline(context: Any = None) -> LeadEmailPipeline:
    global _pipeline
    if _pipeline is None:
        settings = LeadEmailSettings.from_env()
        _pipeline = LeadEmailPipeline(settings, build_dependencies(settings, context))
    return _pipeline


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Entry point for Function URL and scheduler invocations.

    Returns:
        Function URL style response with a JSON body.
    """
    event = event if isinstance(event, dict) else {"_raw": event}
    from_http = is_http_event(event)

    if from_http:
        method = get_http_method(event)
        if method == "OPTIONS":
            # Function URL CORS handles the browser preflight
            return empty_response(204)
        if method != "POST":
            return json_response(405, {"error": "Method not allowed"})

    try:
        pipeline = get_pipeline(context)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return json_response(500, {"error": "Server missing configuration"})

    if from_http:
        try:
            body = decode_body(event)
            payload = json.loads(body) if body else {}
        except ValueError:
            return json_response(400, {"error": "Invalid JSON body"})
        trusted = False
    elif "threadId" in event:
        payload = event
        trusted = True
    else:
        logger.warning(f"Unsupported event shape: {sorted(event.keys())}")
        return json_response(400, {"error": "Unsupported event"})

    try:
        request = parse_lead_request(payload, trusted, pipeline.settings.thread_id_prefix)
    except InvalidRequestError as e:
        return json_response(400, {"error": str(e)})

    try:
        outcome = pipeline.run(request)
    except Exception as e:
        logger.error(f"[{request.thread_id}] Unhandled pipeline error: {e}", exc_info=True)
        return json_response(500, {"error": "Internal server error"})

    return json_response(outcome.status_code, outcome.to_body())
