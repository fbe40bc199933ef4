"""Builds the concrete HTTP collaborators named by the settings."""
from selfheal.app.core.config import Settings
from selfheal.app.core.logging import get_logger
from selfheal.app.services.coder_executor import CoderExecutionProvider
from selfheal.app.services.collaborators import Collaborators
from selfheal.app.services.context_provider import HttpContextProvider
from selfheal.app.services.health_verifier import HttpHealthVerifier
from selfheal.app.services.hypothesis_parser import NoteHypothesisParser
from selfheal.app.services.llm_adapter import get_adapter
from selfheal.app.services.pagerduty_notifier import PagerDutyNotifier
from selfheal.app.services.reasoning_provider import LLMReasoningProvider
from selfheal.app.services.slack_notifier import SlackApprovalNotifier

logger = get_logger(__name__)


def build_default_collaborators(settings: Settings) -> Collaborators:
    """
    Wire every collaborator that has enough configuration to run.

    Roles left unconfigured stay None; the orchestrator refuses to start
    without the required ones.
    """
    collaborators = Collaborators(parser=NoteHypothesisParser())

    if settings.context_api_url:
        context = HttpContextProvider(
            settings.context_api_url,
            token=settings.context_api_token,
            timeout=settings.context_timeout_seconds,
        )
        collaborators.context = context
        collaborators.knowledge = context

    if settings.reasoning_provider != "gemini" or settings.gemini_api_key:
        collaborators.reasoning = LLMReasoningProvider(get_adapter(settings))

    if settings.coder_api_url and settings.coder_api_token and settings.coder_template_id:
        collaborators.execution = CoderExecutionProvider(
            settings.coder_api_url,
            settings.coder_api_token,
            settings.coder_template_id,
            ready_timeout=settings.coder_ready_timeout_seconds,
        )

    verifier = HttpHealthVerifier(timeout=settings.verification_timeout_seconds)
    collaborators.verification = verifier
    if settings.preflight_enabled:
        collaborators.preflight = verifier

    if settings.slack_bot_token:
        collaborators.approval = SlackApprovalNotifier(
            settings.slack_bot_token,
            settings.slack_approval_channel,
            api_url=settings.slack_api_url,
            timeout=settings.notification_timeout_seconds,
        )

    if settings.pagerduty_api_key:
        collaborators.resolution = PagerDutyNotifier(
            settings.pagerduty_api_key,
            settings.pagerduty_from_email,
            api_url=settings.pagerduty_api_url,
            timeout=settings.notification_timeout_seconds,
        )

    missing = collaborators.missing()
    if missing:
        logger.warning(f"Collaborators without configuration: {', '.join(missing)}")
    return collaborators
