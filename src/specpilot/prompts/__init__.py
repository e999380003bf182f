"""Prompt templates and generation."""

from .generator import PromptContext, TemplatePromptGenerator, truncate_prompt
from .loader import TemplateLoadError, TemplateLoader, load_templates
from .models import DEFAULT_TEMPLATE, PromptTemplate

__all__ = [
    "DEFAULT_TEMPLATE",
    "PromptContext",
    "PromptTemplate",
    "TemplateLoadError",
    "TemplateLoader",
    "TemplatePromptGenerator",
    "load_templates",
    "truncate_prompt",
]
