from .base import *
from .base import env

DEBUG = env.bool("DJANGO_DEBUG", True)
SECRET_KEY = env(
    "DJANGO_SECRET_KEY",
    default="local-only-8QhCq1aV9cXr2mYtB4sLwN7pZ0eKdJ3uF6gHiO5xTvR",
)
ALLOWED_HOSTS = ["localhost", "0.0.0.0", "127.0.0.1"]
