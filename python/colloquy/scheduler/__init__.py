from .scheduler import Scheduler, ScheduledCallback, RETRY_DELAY_DEFAULT

__all__ = ["Scheduler", "ScheduledCallback", "RETRY_DELAY_DEFAULT"]
