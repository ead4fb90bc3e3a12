"""Census Bureau feeds: TIGERweb boundaries and ACS economic profiles."""
