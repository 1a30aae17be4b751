from .callbacks import build_callback_app

__all__ = ["build_callback_app"]
