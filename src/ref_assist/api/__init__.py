"""Local HTTP bridge exposing sessions, catalogs and chat."""
