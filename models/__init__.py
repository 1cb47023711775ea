"""
Data models module for the PopThread coordinator.

This module contains SQLAlchemy ORM models for:
- Users
- Threads, memberships, join requests and chat messages
- Gossips, comments and their votes
- Comment reports
"""
