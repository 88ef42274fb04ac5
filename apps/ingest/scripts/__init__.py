"""GTFS static feed ingestion jobs for the travel guide map."""
