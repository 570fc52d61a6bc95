"""CRM workflow automation engine.

Provides:
- configuration loaded from `.env`
- structured logging
- trigger dispatch, node execution and a batch scheduler over a
  per-tenant JSON document store
- a CLI and a small REST API
"""

__version__ = "0.1.0"

from crm_workflow_engine.engine.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
