"""Practice records application package hosting the legacy migration importer."""
