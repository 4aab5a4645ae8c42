from .config_loader import Config, config
from .settings import Settings

__all__ = ['Config', 'Settings', 'config']
