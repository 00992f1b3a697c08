"""
Configuration Module

Components:
-----------
- **settings.py**: Pydantic-based configuration with environment variable loading
- **constants.py**: System-wide constants, enums and per-dependency presets
"""
