"""Trello card sync: field building, REST client, sync ledger, retry sweeper and board provisioning."""
