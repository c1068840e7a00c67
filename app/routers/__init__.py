from .integrations import router as integrations_router

__all__ = ["integrations_router"]
