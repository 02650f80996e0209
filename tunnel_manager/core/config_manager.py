"""
Configuration Manager for tunnel settings
"""

import copy
import yaml
from pathlib import Path
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manage tunnel manager settings"""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize configuration manager

        Args:
            config_dir: Directory for configuration files
        """
        if config_dir is None:
            self.config_dir = Path.home() / '.config' / 'tunnel-manager'
        else:
            self.config_dir = Path(config_dir)

        self.config_dir.mkdir(parents=True, exist_ok=True)

        # Configuration file paths
        self.settings_file = self.config_dir / 'settings.yaml'
        self.servers_file = self.config_dir / 'servers.json'

        # Default settings
        self.default_settings = {
            'log_level': 'INFO',
            'log_file': str(self.config_dir / 'logs' / 'tunnel_manager.log'),
            'tunnel': {
                'binary_path': None,
                'config_file': str(self.config_dir / 'xray_config.json'),
                'listen': '127.0.0.1',
                'socks_port': 10808,
                'http_port': 10809,
                'startup_timeout': 10,
                'readiness_interval': 0.2,
            },
            'system_proxy': {
                'enabled': True,
                'bypass': ['localhost', '127.0.0.1'],
            },
            'verification': {
                'endpoints': [
                    'https://api.ipify.org',
                    'https://ifconfig.me/ip',
                ],
                'probe_timeout': 2,
                'max_attempts': 6,
            },
            'monitoring': {
                'check_interval': 10,
                'failure_threshold': 1,
            },
            'failover': {
                'enabled': True,
                'ping_timeout': 2,
            },
        }

        # Load or create settings
        self.settings = self.load_settings()

    def load_settings(self) -> Dict:
        """Load settings from file or create default"""
        if self.settings_file.exists():
            try:
                with open(self.settings_file, 'r') as f:
                    settings = yaml.safe_load(f) or {}

                # Merge with defaults to ensure all keys exist
                merged = self._deep_merge(copy.deepcopy(self.default_settings), settings)
                logger.debug("Settings loaded successfully")
                return merged

            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Failed to load settings: {e}")
                logger.info("Using default settings")
                return copy.deepcopy(self.default_settings)
        else:
            # Create default settings file
            self.save_settings(copy.deepcopy(self.default_settings))
            return copy.deepcopy(self.default_settings)

    def save_settings(self, settings: Optional[Dict] = None):
        """Save settings to file"""
        if settings is None:
            settings = self.settings

        try:
            with open(self.settings_file, 'w') as f:
                yaml.dump(settings, f, default_flow_style=False, sort_keys=False)

            self.settings = settings
            logger.debug("Settings saved successfully")

        except OSError as e:
            logger.error(f"Failed to save settings: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get setting value using dot notation

        Args:
            key: Setting key (e.g., 'tunnel.socks_port')
            default: Default value if key not found
        """
        keys = key.split('.')
        value = self.settings

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any):
        """
        Set setting value using dot notation

        Args:
            key: Setting key (e.g., 'failover.enabled')
            value: Value to set
        """
        keys = key.split('.')
        settings = self.settings

        for k in keys[:-1]:
            if k not in settings or not isinstance(settings[k], dict):
                settings[k] = {}
            settings = settings[k]

        settings[keys[-1]] = value
        self.save_settings()

    @staticmethod
    def _deep_merge(base: Dict, update: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
