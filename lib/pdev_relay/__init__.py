from .app import Relay, create_app
from .settings import RelaySettings

__all__ = ["Relay", "RelaySettings", "create_app"]
