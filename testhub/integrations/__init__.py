"""testhub.integrations — adapters for services outside the database.

Services never touch the filesystem or make bare `requests` calls; they go
through one of these modules:

  storage.ObjectStorage          — evidence object store port (+ local adapter)
  tracker_gateway.TrackerGateway — issue-tracker REST API (Jira Cloud)
"""
