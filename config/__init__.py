from .config_loader import Config, SectionProxy, TRADING_MODES, config

__all__ = ['config', 'Config', 'SectionProxy', 'TRADING_MODES']
