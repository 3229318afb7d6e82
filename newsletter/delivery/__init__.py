"""Newsletter delivery package.

A published issue is fanned out into one ``issue_delivery_queue`` row per
confirmed subscriber (the outbox).  Delivery workers drain the outbox,
hand each email to the gateway, and apply retry/backoff or terminal
failure per task.
"""
