from .domain.scheduler import SchedulerOrchestrator

__all__ = ["SchedulerOrchestrator"]
