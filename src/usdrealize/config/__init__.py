from .realize_config import RealizeConfig

__all__ = ["RealizeConfig"]
