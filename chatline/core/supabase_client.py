import os
from functools import lru_cache

from dotenv import load_dotenv
from supabase import create_client, Client


load_dotenv()


supabase_url = os.getenv("PUBLIC_SUPABASE_URL")
supabase_key = os.getenv("SECRET_API_KEY")


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """Service-role client shared by all requests.

    Row-level policies are bypassed with this key, so every chat read and
    write must pass through ``chatline.chat.membership``.
    """
    return create_client(supabase_url, supabase_key)
