
from .chat import ChatPipeline, TurnStream
from .composer import compose_prompt
from .context_builder import ContextBuilder, build_context_prompt, build_conversation_history
from .orchestrator import OrchestrationResult, ResponseOrchestrator
from .quota import QuotaGate
from .safety import check_safety
from .session_manager import SessionManager
from .summary import SummaryRefresher

__all__ = [
    "ChatPipeline",
    "ContextBuilder",
    "OrchestrationResult",
    "QuotaGate",
    "ResponseOrchestrator",
    "SessionManager",
    "SummaryRefresher",
    "TurnStream",
    "build_context_prompt",
    "build_conversation_history",
    "check_safety",
    "compose_prompt",
]
