from codeloop.models.base import ModelClient, ModelTurn, ToolCall


__all__ = ["ModelClient", "ModelTurn", "ToolCall"]
