"""
HTTP route modules, one APIRouter each.
"""

from hybrid_srs.routes import embed, health, interactions, predictions, schedule, search

ROUTERS = [
    interactions.router,
    schedule.router,
    predictions.router,
    search.router,
    embed.router,
    health.router
]

__all__ = ['ROUTERS']
