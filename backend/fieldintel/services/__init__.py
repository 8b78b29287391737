"""Pipeline stages, dispatch and CRM connection services."""
