"""HealthByte: weekly health-metric aggregation and Supabase sync."""
