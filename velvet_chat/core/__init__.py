"""
Core modules for velvet-chat.

This package contains the request pipeline: usage guard, retrying
executor, stream assembly and conversation sessions.
"""
