"""
HubSpot connector package.

The connector talks to the HubSpot CRM API; ``resolution`` turns codes into
labels and ``persistence`` is the storage port tickets are written through.
"""
