import os
import configparser
from pathlib import Path

from wms_replenishment.exceptions import ConfigError

class Config:
    """Configuration manager for the WMS replenishment engine."""

    _instance = None

    def __new__(cls):
        """Singleton pattern implementation."""
        if cls._instance is None:
            cls._instance = super(Config, cls).__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize the configuration if not already initialized."""
        if self._initialized:
            return

        self._config_dir = Path(os.getenv('WMS_CONFIG_DIR', 'config'))
        self._config_path = self._config_dir / 'settings.ini'
        self._config = configparser.ConfigParser(interpolation=None)

        # Load config or fall back to built-in defaults
        if self._config_path.exists():
            try:
                self._config.read(self._config_path)
            except configparser.Error as e:
                raise ConfigError(f"Invalid configuration file {self._config_path}: {str(e)}")
        else:
            self._create_default_config()

        self._initialized = True

    def _create_default_config(self):
        """Populate the default configuration.

        The defaults are only written to disk when the configuration
        directory already exists.
        """
        self._config['DATABASE'] = {
            'engine': 'postgresql',
            'host': 'localhost',
            'port': '5432',
            'database': 'wms',
            'username': 'postgres',
            'password': 'postgres',
            'echo': 'False',
            'pool_size': '10',
            'max_overflow': '20',
            'pool_timeout': '30',
            'pool_recycle': '1800'
        }

        self._config['LOGGING'] = {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'directory': 'logs',
            'max_size_mb': '10',
            'backup_count': '5',
            'console_output': 'True',
            'file_output': 'True'
        }

        self._config['REPLENISHMENT'] = {
            'default_replen_mode': 'queue',
            'inline_replen_max_units': '50',
            'velocity_lookback_days': '14',
            'default_priority': '5',
            'default_source_location_type': 'reserve',
            'default_source_priority': 'fifo',
            'default_replen_method': 'full_case'
        }

        if self._config_dir.exists():
            self._save_config()

    def _save_config(self):
        """Save configuration to file."""
        with open(self._config_path, 'w') as configfile:
            self._config.write(configfile)

    def get(self, section, key, default=None):
        """Get configuration value."""
        try:
            return self._config.get(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return default

    def get_int(self, section, key, default=None):
        """Get configuration value as integer."""
        try:
            return self._config.getint(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return default

    def get_float(self, section, key, default=None):
        """Get configuration value as float."""
        try:
            return self._config.getfloat(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return default

    def get_boolean(self, section, key, default=None):
        """Get configuration value as boolean."""
        try:
            return self._config.getboolean(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return default

    def set(self, section, key, value, persist=True):
        """Set configuration value."""
        if not self._config.has_section(section):
            self._config.add_section(section)

        self._config.set(section, key, str(value))
        if persist and self._config_dir.exists():
            self._save_config()

    def get_db_url(self):
        """Generate SQLAlchemy database URL.

        An explicit ``url`` option (or the ``WMS_DATABASE_URL`` environment
        variable) takes precedence over the individual connection settings.
        """
        url = os.getenv('WMS_DATABASE_URL') or self.get('DATABASE', 'url')
        if url:
            return url

        engine = self.get('DATABASE', 'engine', 'postgresql')
        username = self.get('DATABASE', 'username', 'postgres')
        password = self.get('DATABASE', 'password', 'postgres')
        host = self.get('DATABASE', 'host', 'localhost')
        port = self.get('DATABASE', 'port', '5432')
        database = self.get('DATABASE', 'database', 'wms')

        return f"{engine}://{username}:{password}@{host}:{port}/{database}"

    @property
    def log_config(self):
        """Get logging configuration."""
        return {
            'level': self.get('LOGGING', 'level', 'INFO'),
            'format': self.get('LOGGING', 'format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
            'directory': self.get('LOGGING', 'directory', 'logs'),
            'max_size_mb': self.get_int('LOGGING', 'max_size_mb', 10),
            'backup_count': self.get_int('LOGGING', 'backup_count', 5),
            'console_output': self.get_boolean('LOGGING', 'console_output', True),
            'file_output': self.get_boolean('LOGGING', 'file_output', True)
        }

    @property
    def replen_config(self):
        """Get replenishment defaults."""
        return {
            'default_replen_mode': self.get('REPLENISHMENT', 'default_replen_mode', 'queue'),
            'inline_replen_max_units': self.get_int('REPLENISHMENT', 'inline_replen_max_units', 50),
            'velocity_lookback_days': self.get_int('REPLENISHMENT', 'velocity_lookback_days', 14),
            'default_priority': self.get_int('REPLENISHMENT', 'default_priority', 5),
            'default_source_location_type': self.get('REPLENISHMENT', 'default_source_location_type', 'reserve'),
            'default_source_priority': self.get('REPLENISHMENT', 'default_source_priority', 'fifo'),
            'default_replen_method': self.get('REPLENISHMENT', 'default_replen_method', 'full_case')
        }

# Global config instance
config = Config()
