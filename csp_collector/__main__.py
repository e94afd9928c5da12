import os
import sys


def main():
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "csp_collector.settings")
    from django.core.management import execute_from_command_line

    execute_from_command_line([sys.argv[0], "runcollector", *sys.argv[1:]])


if __name__ == "__main__":
    main()
