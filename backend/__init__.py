"""Server-side packages for the Guardião LGPD platform."""
