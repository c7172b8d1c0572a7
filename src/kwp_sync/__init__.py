"""Project sync between the KWP ERP database and Supabase."""

__version__ = "0.1.0"
