from .driver import OrchestrationDriver, RunMode, RunOptions, RunReport, aggregate_verdict

__all__ = ["OrchestrationDriver", "RunMode", "RunOptions", "RunReport", "aggregate_verdict"]
