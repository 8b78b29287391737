"""Third-party integrations: speech, extraction, OAuth and CRM providers."""
