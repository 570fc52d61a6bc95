"""REST server exposing the cron tick, trigger intake and inspection endpoints."""
