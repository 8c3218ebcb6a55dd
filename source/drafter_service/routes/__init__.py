from .vms import vms_router, get_orchestrator
from .metrics import router_metrics

__all__ = ["vms_router", "router_metrics", "get_orchestrator"]
