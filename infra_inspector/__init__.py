"""Infrastructure inspection for hosts, MySQL, Redis, Nginx and Tomcat."""

__version__ = "0.4.0"
