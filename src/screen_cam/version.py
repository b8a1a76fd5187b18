"""Package version information."""

APP_VERSION = "0.4.0"
