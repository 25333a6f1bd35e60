from .operations import LspNavigator
from .servers import ServerConfig, ServerRegistry
from .sessions import LspSession, LspSessionManager

__all__ = ["LspNavigator", "LspSession", "LspSessionManager", "ServerConfig", "ServerRegistry"]
