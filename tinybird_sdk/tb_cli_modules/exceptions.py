import click


class CLIException(click.exceptions.ClickException):
    """Default exception for all exceptions raised in the CLI.

    Allows to specify a custom exit code (default is 1).
    """

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code

    def format_message(self) -> str:
        return self.message

    def show(self, file=None) -> None:
        click.echo(self.format_message(), file=file, err=True)


class CLIConfigException(CLIException):
    pass


class CLIBuildException(CLIException):
    pass


class CLIDeployException(CLIException):
    pass


class CLIBranchException(CLIException):
    pass


class CLILocalException(CLIException):
    pass
