"""
Kerberos principal names.

Only the parts krb5-sync needs are modelled: the base name, an optional
instance and the realm.  Quoting with backslashes is honoured when parsing.
"""

from typing import NamedTuple, Optional, Tuple


class Principal(NamedTuple):
    """An immutable Kerberos principal name."""
    name: str
    instance: Optional[str] = None
    realm: Optional[str] = None
    extra_components: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> 'Principal':
        """
        Parse a principal of the form base[/instance][@REALM].

        Args:
            text: Principal string

        Returns:
            Parsed Principal

        Raises:
            ValueError: If the string is empty or has an empty base name
        """
        if not text:
            raise ValueError("Empty principal name")

        components = []
        realm = None
        current = []
        escaped = False
        for char in text:
            if escaped:
                current.append(char)
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '/' and realm is None:
                components.append(''.join(current))
                current = []
            elif char == '@' and realm is None:
                components.append(''.join(current))
                current = []
                realm = ''
            else:
                current.append(char)

        if realm is None:
            components.append(''.join(current))
        else:
            realm = ''.join(current) or None

        if not components[0]:
            raise ValueError(f"Principal has an empty name: {text!r}")

        instance = components[1] if len(components) > 1 else None
        return cls(components[0], instance, realm, tuple(components[2:]))

    @property
    def has_instance(self) -> bool:
        return self.instance is not None or bool(self.extra_components)

    def with_instance(self, instance: str) -> 'Principal':
        """Return the two-component principal base/instance in the same realm."""
        return Principal(self.name, instance, self.realm)

    def unparse(self, with_realm: bool = True) -> str:
        parts = [self.name]
        if self.instance is not None:
            parts.append(self.instance)
        parts.extend(self.extra_components)
        text = '/'.join(parts)
        if with_realm and self.realm:
            text = f"{text}@{self.realm}"
        return text

    def __str__(self):
        return self.unparse()


def as_principal(value) -> Principal:
    """Accept either a Principal or its string form."""
    if isinstance(value, Principal):
        return value
    return Principal.parse(value)
