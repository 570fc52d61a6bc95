"""Engine components: configuration, logging, persistence and messaging.

The workflow semantics live in :mod:`crm_workflow_engine.engine.workflow`.
"""
