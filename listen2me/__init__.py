"""
Listen2Me
=========

Listens to group chats through a OneBot 11 gateway and extracts
todos, notifications and activities with an LLM.
"""

__version__ = "0.1.0"
