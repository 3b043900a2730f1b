from scheduler_platform.adr.billing import BillingCalculation, WindowPolicy, calculate_billing
from scheduler_platform.adr.orchestrator import AdrOrchestrator, RunProgress
from scheduler_platform.adr.results import OrchestrationResult
from scheduler_platform.adr.status import AdrStatus

__all__ = [
    "AdrOrchestrator",
    "AdrStatus",
    "BillingCalculation",
    "OrchestrationResult",
    "RunProgress",
    "WindowPolicy",
    "calculate_billing",
]
