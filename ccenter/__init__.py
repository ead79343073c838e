"""Contact-centre core: agents, calls, switch connections, chats, cluster and member reservation."""

__version__ = "0.1.0"