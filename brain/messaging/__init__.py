"""Inter-agent messaging: mailboxes and delivery."""
