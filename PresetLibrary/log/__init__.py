"""
Logging subsystem: handlers for application logging.

Modules:

- :mod:`PresetLibrary.log.log` – Log handler integrating with Python logging and the Qt message bridge.
"""
