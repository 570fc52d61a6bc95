"""Workflow domain concepts.

This package holds first-class types for:
- Workflow definitions (the node/edge graph authored per tenant)
- Trigger events and the dispatcher that starts instances
- Node execution (actions, conditions, delays)
- The persisted execution state machine and the scheduler that advances it
"""

__all__: list[str] = []
