from branching_agent_loop.memory.migrations import CURRENT_FORMAT_VERSION, migrate_records
from branching_agent_loop.memory.models import CompactionRecord, SessionEntry
from branching_agent_loop.memory.session_manager import SessionManager
from branching_agent_loop.memory.session_tree import SessionTree
from branching_agent_loop.memory.store import MemoryStore

__all__ = [
    "CURRENT_FORMAT_VERSION",
    "CompactionRecord",
    "MemoryStore",
    "SessionEntry",
    "SessionManager",
    "SessionTree",
    "migrate_records",
]
