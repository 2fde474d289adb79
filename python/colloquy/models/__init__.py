from .gateway import ModelGateway
from .litellm_gateway import LiteLLMGateway, normalize_messages

__all__ = ["ModelGateway", "LiteLLMGateway", "normalize_messages"]
