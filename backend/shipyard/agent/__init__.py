"""
Agent module: drives the plan -> build workflow against a session sandbox.

Usage:
    from shipyard.agent import AgentOrchestrator

    orchestrator = AgentOrchestrator(db_session, config, agent_client)
    for packet in orchestrator.run(message, assistant_message_id):
        ...

Module structure:
    - orchestrator.py: Workflow state machine
    - event_processor.py: Upstream events -> normalized packets + transcript
    - plan_service.py / build_service.py: Typed plan and build streams
    - dispatcher.py: Queued builds with one active build per session
    - tasks/: Celery build worker
"""

from shipyard.agent.dispatcher import BuildDispatcher
from shipyard.agent.event_processor import EventProcessor
from shipyard.agent.models import AgentRunConfig
from shipyard.agent.models import AgentWorkflowState
from shipyard.agent.orchestrator import AgentOrchestrator

__all__ = [
    "AgentOrchestrator",
    "AgentRunConfig",
    "AgentWorkflowState",
    "BuildDispatcher",
    "EventProcessor",
]
