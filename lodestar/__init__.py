# ruff: noqa: F401
from .__version__ import __version__
from .app.application import GeminiApplication
from .app.auth import AuthContext, AuthRule, parse_distinguished_name
from .app.base import Request, Response, RoutePattern, Status
from .app.dispatch import HandlerEntry, HandlerError
from .config import ConfigError, ServerConfig, build_config, load_config
from .protocol import GeminiProtocol
from .server import GeminiServer

__title__ = "Lodestar Gemini Server"
__author__ = "The Lodestar Authors"
__license__ = "MIT"
__copyright__ = "(c) 2024 The Lodestar Authors"
