from .config_loader import Config, ConfigError, SectionProxy, config

__all__ = ['Config', 'ConfigError', 'SectionProxy', 'config']
