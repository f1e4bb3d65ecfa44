"""Clock used by the polling loops. Tests swap in a fake one."""

import time
from datetime import datetime, timezone


class SystemClock:
    """Wall clock plus blocking sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def time_ms(self) -> int:
        return int(time.time() * 1000)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)
