"""Client initialization utilities.

Provides functions for initializing the external service clients
(Supabase) used when the API wires its services.
"""

import os

from supabase import Client, create_client


def get_supabase_client() -> Client:
    """Create a Supabase client from the environment.

    Reads configuration from environment variables:
    - SUPABASE_URL: Supabase project URL
    - SUPABASE_SERVICE_KEY: Supabase service role key

    Raises:
        ValueError: If required environment variables are missing.
    """
    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_SERVICE_KEY")

    if not supabase_url or not supabase_key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY environment variables are required")

    return create_client(supabase_url, supabase_key)

