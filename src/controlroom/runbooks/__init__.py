"""Loading runbook and script definitions from YAML."""

from controlroom.runbooks.loader import RunbookDefinitionError, load_definitions

__all__ = ["RunbookDefinitionError", "load_definitions"]
