from newsletter.api.main import app

__all__ = ["app"]
