from . import ai_models, callbacks, generation, health, memory

__all__ = ["ai_models", "callbacks", "generation", "health", "memory"]
