from niya.api.system.routes import router

__all__ = ["router"]
