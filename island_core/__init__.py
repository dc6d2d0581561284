"""Claude Island - session coordination core for a coding-assistant notification shell."""
