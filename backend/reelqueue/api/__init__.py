from reelqueue.api.routes import player_router, router

__all__ = ["player_router", "router"]
