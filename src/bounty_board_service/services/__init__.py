"""Service layer components."""

from bounty_board_service.services.activity_recorder import ActivityRecorder
from bounty_board_service.services.application_manager import ApplicationManager
from bounty_board_service.services.engine_store import EngineStore, UnitOfWork
from bounty_board_service.services.permission_resolver import PermissionResolver
from bounty_board_service.services.settlement_coordinator import SettlementCoordinator
from bounty_board_service.services.task_manager import TaskManager, build_task_manager
from bounty_board_service.services.task_state_machine import TaskStateMachine
from bounty_board_service.services.team_manager import TeamManager
from bounty_board_service.services.treasury import Treasury

__all__ = [
    "ActivityRecorder",
    "ApplicationManager",
    "EngineStore",
    "PermissionResolver",
    "SettlementCoordinator",
    "TaskManager",
    "TaskStateMachine",
    "TeamManager",
    "Treasury",
    "UnitOfWork",
    "build_task_manager",
]
