"""
Sensitive path patterns.

Paths that usually hold credentials are refused by PathGuard and dropped
from search, listing and navigation output, whether or not they sit inside
an allowed root. Matching is done on the root-relative path: any directory
component in IGNORED_DIRECTORIES blocks the whole subtree, and the file
patterns are tried against the basename and the `parent/name` pair.
"""

import re
from typing import Iterable, Pattern, Sequence, Tuple

IGNORED_DIRECTORIES = frozenset({
    ".git",
    ".ssh",
    ".gnupg",
    ".password-store",
    ".subversion",
})

_PATTERNS: Tuple[str, ...] = (
    # environment files
    r"\.env$",
    r"\.env\..+$",
    r"^\.(ruby|python|node)-env$",
    r"^\.rbenv-vars$",
    # package manager and tool credentials
    r"^\.npmrc$",
    r"^\.pypirc$",
    r"^_?\.?netrc$",
    r"^\.netrc\.heroku$",
    r"^\.dockercfg$",
    r"^\.docker/config\.json$",
    r"^\.?credentials$",
    r"^\.aws/(credentials|config)$",
    r"^\.git-credentials$",
    r"^git-credentials$",
    r"^\.htpasswd$",
    r"^\.pgpass$",
    r"^\.my\.cnf$",
    r"^\.s3cfg$",
    r"^\.pip/pip\.conf$",
    r"^\.m2/settings\.xml$",
    r"^\.kube/config$",
    r"^kubeconfig$",
    r"^\.(msmtprc|fetchmailrc|muttrc|mailrc|ircrc)$",
    r"^\.?rsync[-_]password$",
    # ssh keys
    r"^id_(rsa|dsa|ecdsa|ed25519)(\.pub)?$",
    r"_(rsa|dsa|ecdsa|ed25519)$",
    r"^(known_hosts|authorized_keys)$",
    # keys, certificates and keystores
    r"\.(pem|key|crt|cer|csr|p12|pfx|jks|keystore|ppk|asc|gpg)$",
    r"\.(keychain|keychain-db|kdbx|kdb|mobileprovision|provisionprofile|ovpn|rdp)$",
    r"^master\.key$",
    # cloud and service accounts
    r"^.*service[-_]account.*\.json$",
    r"^application[-_]default[-_]credentials\.json$",
    r"^\.?gcloud[-_]credentials\.json$",
    r"^\.gcp[-_]credentials\.json$",
    r"^\.azure[-_]credentials$",
    r"^client_secret.*\.json$",
    r"^google-services\.json$",
    r"^GoogleService-Info\.plist$",
    # infrastructure state
    r"^terraform\.tfstate(\.backup)?$",
    r"^terraform\.tfvars$",
    # token and secret files
    r"^\.?(access|refresh|bearer|auth)_token$",
    r"^\.token(\..*)?$",
    r"^token\.txt$",
    r"^\.?(github|slack|npm|do|linode)[-_]token$",
    r"^(oauth|jwt|bearer)[-_]token.*$",
    r"^api[-_]?keys?\..*$",
    r"^\.?(password|passwords|secret|secrets)\.txt$",
    r"^\.(password|secret)$",
    r"^secrets\.yml$",
    r"^wp-config\.php$",
    r"^\.?vault[-_]pass.*$",
    # shell and database history
    r"^\.(bash|zsh|sh|mysql|psql|sqlite|redis|mongo)_history$",
    r"^\.history$",
    r"^\.dbshell$",
    # wallets and dumps
    r"^wallet\.dat$",
    r"^default_wallet$",
    r"^dump\.rdb$",
    r"\.(bson|dump|dmp|mdmp)$",
    r"\.postman_environment\.json$",
)

IGNORED_FILE_PATTERNS: Tuple[Pattern[str], ...] = tuple(re.compile(pattern) for pattern in _PATTERNS)


def is_sensitive_relpath(parts: Sequence[str]) -> bool:
    """True when a root-relative path (split into components) must not be exposed."""
    components = [part for part in parts if part and part != "."]
    if not components:
        return False
    if any(part in IGNORED_DIRECTORIES for part in components):
        return True
    candidates: Iterable[str] = [components[-1]]
    if len(components) > 1:
        candidates = [components[-1], f"{components[-2]}/{components[-1]}"]
    return any(pattern.search(candidate) for pattern in IGNORED_FILE_PATTERNS for candidate in candidates)
