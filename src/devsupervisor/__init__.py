"""Development stack supervisor: frees fixed ports, runs the backend and frontend dev servers, stops them on exit."""

__version__ = "0.1.0"
