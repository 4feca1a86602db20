# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''PowerShell Remoting to the computers running SQL Server.

Scripts get their arguments in the variable $arguments, deserialized from
JSON, and return their result as JSON (ConvertTo-Json). Errors written by the
script fail the invocation.'''
import json
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Callable, Dict, List, Optional

from pypsrp.client import Client
from pypsrp.exceptions import AuthenticationError, WinRMError, WinRMTransportError

from dbaflow.credential_handler import get_credentials
from dbaflow.errors import RemoteExecutionError

logger = getLogger('dbaflow')

ARGUMENTS_PREAMBLE = """$ErrorActionPreference = 'Stop'
$arguments = ConvertFrom-Json @'
{arguments}
'@
"""


def build_script(script: str, arguments: dict = None) -> str:
    """Prefix script with the deserialization of arguments."""
    return ARGUMENTS_PREAMBLE.format(arguments=json.dumps(arguments or {})) + script


def parse_output(output: str) -> Any:
    """JSON written by the script, None if the script wrote nothing."""
    if output is None or not output.strip():
        return None
    try:
        return json.loads(output)
    except ValueError:
        return output.strip()


class RemoteExecutor:
    '''Runs PowerShell scripts on remote computers.

    Arguments
    ---------
    configuration
        Configuration with keys remote_username_file, remote_password_file,
        remote_ssl and remote_auth.
    client_factory
        Function creating a pypsrp client for a computer.
    '''

    def __init__(self, configuration: dict = None, client_factory: Callable[..., Client] = Client):
        self.configuration = configuration or {}
        self.client_factory = client_factory
        self.clients: Dict[str, Client] = {}

    def client(self, computer: str) -> Client:
        if computer.lower() not in self.clients:
            username, password = None, None
            # without a username file the current Windows user is used
            if self.configuration.get('remote_username_file'):
                credential = get_credentials(
                    f'remote:{computer}',
                    usrn_file_path=self.configuration.get('remote_username_file'),
                    pw_file_path=self.configuration.get('remote_password_file'),
                    usrn_prompt=f'Username for {computer} (empty for current user): '
                )
                username, password = credential.username or None, credential.password or None
            self.clients[computer.lower()] = self.client_factory(
                computer,
                username=username,
                password=password,
                ssl=self.configuration.get('remote_ssl', True),
                auth=self.configuration.get('remote_auth', 'negotiate'),
                cert_validation=self.configuration.get('remote_cert_validation', True)
            )
        return self.clients[computer.lower()]

    def invoke(self, computer: str, script: str, arguments: dict = None) -> Any:
        """Run script on computer and return its parsed output.

        Raises RemoteExecutionError if the computer can not be reached or the
        script reported errors.
        """
        logger.debug(f'Invoking remote script on {computer}')
        try:
            output, streams, had_errors = self.client(computer).execute_ps(build_script(script, arguments))
        except (AuthenticationError, WinRMTransportError, WinRMError) as err:
            raise RemoteExecutionError(computer, str(err)) from err
        if had_errors:
            messages = [str(record) for record in getattr(streams, 'error', [])]
            raise RemoteExecutionError(computer, '; '.join(messages) or 'Script reported errors')
        return parse_output(output)


@dataclass
class DirectoryPrincipal:
    name: str
    distinguished_name: str
    service_principal_names: List[str] = field(default_factory=list)


LOOKUP_SCRIPT = r"""
$filter = "(&(objectClass=$($arguments.object_class))(sAMAccountName=$($arguments.account)))"
$searcher = New-Object System.DirectoryServices.DirectorySearcher([adsi]'', $filter)
[void]$searcher.PropertiesToLoad.Add('samaccountname')
[void]$searcher.PropertiesToLoad.Add('distinguishedname')
[void]$searcher.PropertiesToLoad.Add('serviceprincipalname')
$result = $searcher.FindOne()
if ($result) {
    ConvertTo-Json -Compress -InputObject ([pscustomobject]@{
        name = [string]$result.Properties['samaccountname'][0]
        distinguished_name = [string]$result.Properties['distinguishedname'][0]
        spns = @($result.Properties['serviceprincipalname'] | ForEach-Object { [string]$_ })
    })
}
"""


def account_name(identity: str) -> str:
    """sAMAccountName of DOMAIN\\account or account@domain."""
    if '\\' in identity:
        return identity.split('\\', 1)[1]
    if '@' in identity:
        return identity.split('@', 1)[0]
    return identity


class DirectoryService:
    '''Active Directory lookups, run as ADSI searches on a domain member.

    Arguments
    ---------
    remote
        RemoteExecutor used for the searches.
    search_computer
        Computer that runs the searches. The computer of the looked up
        instance is used if not given.
    '''

    def __init__(self, remote: RemoteExecutor, search_computer: str = None):
        self.remote = remote
        self.search_computer = search_computer

    def lookup(self, identity: str, object_type: str = 'User', computer: str = None) -> Optional[DirectoryPrincipal]:
        """Return the directory object of identity, None if it does not exist."""
        result = self.remote.invoke(
            self.search_computer or computer,
            LOOKUP_SCRIPT,
            {'account': account_name(identity), 'object_class': object_type.lower()}
        )
        if not result:
            return None
        return DirectoryPrincipal(result['name'], result['distinguished_name'], list(result.get('spns') or []))
