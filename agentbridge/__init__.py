"""agentbridge: one chunk protocol over Claude, Codex and OpenCode."""

__version__ = "0.1.0"
