from .model import BaseModel, json_default

__all__ = ["BaseModel", "json_default"]
