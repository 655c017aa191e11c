"""Business-process automation and orchestration core.

Provides:
- a validated, versioned process-definition graph model
- a priority/dependency-aware task orchestrator with a worker pool
- a workflow engine interpreting process graphs step by step
- an event processor and a job scheduler as triggers
"""

__version__ = "0.1.0"

from bpm_orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
