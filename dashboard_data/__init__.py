"""Client-side analytical data layer for the application-retirement dashboard."""
