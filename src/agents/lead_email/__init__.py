"""Chat lead notification email agent."""

from .config import LeadEmailSettings
from .models import LeadRequest, PipelineOutcome
from .pipeline import LeadEmailDependencies, LeadEmailPipeline, parse_lead_request

__all__ = [
    "LeadEmailDependencies",
    "LeadEmailPipeline",
    "LeadEmailSettings",
    "LeadRequest",
    "PipelineOutcome",
    "parse_lead_request",
]
