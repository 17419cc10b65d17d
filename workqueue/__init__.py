# workqueue/__init__.py
"""
Workqueue - persistent, priority-ordered background task queue
Producers enqueue tasks into a shared relational store; workers claim them
with skip-locked selection and resolve them with retries and backoff.
"""

__version__ = "1.0.0"
