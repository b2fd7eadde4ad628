"""Remote store backends: Supabase REST (httpx) and direct Postgres (asyncpg)."""
