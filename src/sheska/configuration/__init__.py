"""
Configuration management for Sheska.

- **app_configuration.py**: YAML configuration loader (``config/app_config.yml``)
  guarded by fcntl locks. Provides the database path and the scheduler section.

- **scheduler_settings.py**: Typed view over the scheduler section: transport
  retry count and backoff, connection limits, and the startup synchronization
  delay.

- **credentials.py**: Discord webhook URL and X OAuth keys taken from the
  environment.
"""
