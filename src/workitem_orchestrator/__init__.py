"""Work Item Orchestrator.

Autonomous orchestration core for units of work:
- a guard-gated state machine that never reopens DONE or KILLED work items
- a sequential workflow step engine with retries and conditional steps
- a bounded LLM tool-calling agent loop
"""

__version__ = "0.1.0"

from workitem_orchestrator.core.config import OrchestratorConfig
from workitem_orchestrator.core.orchestrator import Orchestrator

__all__ = ["__version__", "Orchestrator", "OrchestratorConfig"]
