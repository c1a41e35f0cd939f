"""
Exceptions raised by the Availability Group admin scripts
"""


class AgAdminError(Exception):
    """Base class for errors raised by the AG admin tooling"""


class TopologyValidationError(AgAdminError):
    """An object handed to a downstream stage is missing topology fields"""

    def __init__(self, missing_fields, source=None):
        self.missing_fields = list(missing_fields)
        self.source = source
        fields = ", ".join(self.missing_fields)
        super().__init__(
            f"Input is not a valid availability group topology (missing or invalid: {fields}). "
            "Use the output of the topology reader."
        )


class LogFileResolutionError(AgAdminError):
    """The logical log file name of a database could not be determined"""


class ClusterCommandError(AgAdminError):
    """A remote failover cluster command returned a failure"""

    def __init__(self, command, returncode, stderr):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Cluster command failed ({returncode}): {stderr.strip() or command}")


class AgTopologyError(AgAdminError):
    """One availability group could not be read; the topology reader skips it"""


class FailoverCommandError(AgAdminError):
    """A failover-related T-SQL command failed on the target replica"""
