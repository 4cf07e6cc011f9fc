"""
Supabase client for the chat core's document store
"""
import os
from typing import Optional

from supabase import create_client, Client
from dotenv import load_dotenv

load_dotenv()

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """Get or create the Supabase client singleton"""
    global _supabase_client

    if _supabase_client is None:
        url = os.getenv("SUPABASE_URL")
        # Service role key: the chat core writes chats and struggle profiles for any student
        key = os.getenv("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment")

        _supabase_client = create_client(url, key)

    return _supabase_client


def reset_supabase_client() -> None:
    """Drop the cached client (used when credentials change, e.g. in tests)."""
    global _supabase_client
    _supabase_client = None
