"""Raw SQL operations mixed into SQLiteDatabaseHandler."""
