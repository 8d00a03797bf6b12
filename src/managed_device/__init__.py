"""
Managed device client: device-management protocol over MQTT.

Publishes manage/unmanage, location and diagnostics requests, correlates their
responses, and surfaces controller action requests (reboot, factory reset,
firmware download/update) for the application to accept or reject.
"""
