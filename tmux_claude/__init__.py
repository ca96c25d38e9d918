"""tmux-claude: tmux session dashboard with Claude Code activity tracking."""

__version__ = "0.3.0"
