"""Module entrypoint kept for ``python -m crm_workflow_engine.cli``.

The CLI is implemented in `crm_workflow_engine.engine.main`.
"""

from __future__ import annotations

from crm_workflow_engine.engine.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
