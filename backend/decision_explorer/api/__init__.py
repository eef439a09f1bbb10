from decision_explorer.api.routes import health, instances, nodes, pathways
from decision_explorer.api.dependencies import get_correlation_id, get_current_user_id

# API route modules
__all__ = [
    "health",
    "pathways",
    "nodes",
    "instances",
    "get_correlation_id",
    "get_current_user_id"
]
