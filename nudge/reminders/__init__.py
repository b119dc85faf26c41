"""Notification scheduling and delivery service (API, Celery worker, dispatcher).

Reminders and routines are turned into notification_queue rows, one per window, and a
periodic dispatcher claims due rows and delivers them over push, email and SMS.
"""
