from compliance_monitor.workers.scheduler import GuardedJob, MonitorScheduler

__all__ = ["GuardedJob", "MonitorScheduler"]
