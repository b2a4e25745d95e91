"""HTTP clients for services called by middlewares."""

from docchain.clients.inference import InferenceClient

__all__ = ["InferenceClient"]
