# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Credential lookup for SQL Server instances and remote hosts.

Credentials are stored per key (instance or computer name) in two key=value
files, one for usernames and one for obfuscated passwords. Missing credentials
are asked from the user and appended to the files.
"""
import getpass
from base64 import b64decode, b64encode
from logging import getLogger
from pathlib import Path
from typing import NamedTuple, Optional

logger = getLogger("dbaflow")

# credentials read during this process, by key
cred_dict = {}


class Credential(NamedTuple):
    username: str
    password: str

    @property
    def is_integrated(self) -> bool:
        """Empty username means Windows (trusted) authentication."""
        return not self.username


def obfuscate_password(password: str) -> str:
    """Not secure encryption of a password.
    At least it is not in plain text.
    """
    return b64encode(password.encode()).decode()


def deobfuscate_password(obfuscated_password: str) -> str:
    """Reverse of obfuscate_password."""
    return b64decode(obfuscated_password.encode()).decode()


def lookup_from_file(key: str, filename: str) -> Optional[str]:
    """Return value of key from file, None if the file or the key does not exist.

    A key without value (trusted connection) returns an empty string.
    """
    if filename is None or not Path(filename).is_file():
        return None
    with open(filename, "r", encoding="utf-8") as f:
        for line in f:
            linekey, separator, val = line.rstrip("\n").partition("=")
            if linekey == key:
                return val if separator else ""
    return None


def store_to_file(key: str, val: str, filename: str):
    """Append key and value to file, creating the directory when needed."""
    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    with open(filename, "a+", encoding="utf-8") as f:
        f.write(f"{key}={val}\n")


def get_credentials(
    cred_key: str,
    usrn_file_path: str = None,
    pw_file_path: str = None,
    usrn_prompt: str = None,
    pw_prompt: str = "Password: ",
) -> Credential:
    """Retrieve credentials for cred_key from files, or ask them.

    Arguments
    ---------
    cred_key
        Key of the credentials, usually the instance or computer name.
    usrn_file_path
        The username file path or None for no storing.
    pw_file_path
        The password file path or None for no storing.
    usrn_prompt
        How the username is asked. Defaults to 'Username for <cred_key>: '.
    pw_prompt
        How the password is asked.
        If None, password is not asked from user.

    Returns
    -------
    Credential
        The username and the password.
    """
    if cred_key not in cred_dict:
        username = lookup_from_file(cred_key, usrn_file_path)
        password = lookup_from_file(cred_key, pw_file_path)
        if username is None or password is None:
            if usrn_file_path is not None and pw_file_path is not None:
                logger.info(f"Credentials for {cred_key} are not yet defined.")
                logger.info(
                    f"The credentials will be stored in files {usrn_file_path} and {pw_file_path}"
                )
            username = input(usrn_prompt or f"Username for {cred_key}: ")
            new_password = getpass.getpass(pw_prompt) if pw_prompt else ""
            password = obfuscate_password(new_password)
            if usrn_file_path is not None and pw_file_path is not None:
                store_to_file(cred_key, username, usrn_file_path)
                store_to_file(cred_key, password, pw_file_path)
        cred_dict[cred_key] = (username, password)
    username, password = cred_dict[cred_key]
    return Credential(username, deobfuscate_password(password))
