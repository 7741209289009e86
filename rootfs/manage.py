#!/usr/bin/env python
import os
import sys

if __name__ == "__main__":
    if sys.argv[1:2] == ["test"]:
        os.environ.setdefault("DJANGO_SETTINGS_MODULE", "gateway.settings.testing")
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "gateway.settings.production")

    from django.core.management import execute_from_command_line

    execute_from_command_line(sys.argv)
