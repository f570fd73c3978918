from .registry import PromptMeta, PromptNotFoundError, PromptRegistry, PromptTemplateError

__all__ = ["PromptMeta", "PromptNotFoundError", "PromptRegistry", "PromptTemplateError"]
