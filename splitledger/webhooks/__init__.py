"""Webhook delivery engine.

Turns domain events into HMAC-signed, retried, at-least-once HTTP
notifications to tenant endpoints:

- ``dispatcher``: fans an event out to matching subscriptions and enqueues jobs
- ``worker``: consumes jobs, performs the signed POST, drives the delivery state machine
- ``service`` / ``recovery``: operator operations (CRUD, redeliver, test, dead letters)
"""
