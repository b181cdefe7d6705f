"""WhatsApp Cloud API webhook ingestion service."""
