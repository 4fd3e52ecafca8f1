"""Revenue kernel: offline conversion upload queue and usage reconciliation.

The FastAPI app lives in ``revenue_kernel.main``; periodic jobs can also run
from the command line via ``python -m revenue_kernel.jobs.cron``.
"""

__all__: list[str] = []
