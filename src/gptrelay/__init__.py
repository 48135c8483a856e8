"""Relay answers from an OpenAI backend into Telegram as live-edited messages."""

__version__ = "0.1.0"
