"""taskorch: reconciles a directory of task files against tmux worker sessions."""

__version__ = "0.3.0"
