"""Identity data extraction from validated Responses."""

from __future__ import annotations

from samlsp.core.saml.protocol import Assertion, Response


def _first_assertion(response: Response) -> Assertion | None:
    return response.assertions[0] if response.assertions else None


def extract_attributes(response: Response) -> dict[str, str]:
    """Flatten the first assertion's attributes into a name -> value mapping.

    Only the first value of each attribute is kept and a later attribute
    with the same name overwrites an earlier one. The subject's NameID is
    added as ``nameId`` and ``nameIdFormat``, and as ``email`` when the
    format is an email format.

    Args:
        response: A Response that has passed validation.

    Returns:
        Attribute mapping; empty if the response has no assertion.
    """
    assertion = _first_assertion(response)
    if assertion is None:
        return {}

    attributes: dict[str, str] = {}
    for statement in assertion.attribute_statements:
        for attribute in statement.attributes:
            attributes[attribute.name] = attribute.values[0] if attribute.values else ""

    name_id = assertion.subject.name_id if assertion.subject else None
    if name_id is not None:
        name_id_format = name_id.format or ""
        if "email" in name_id_format:
            attributes["email"] = name_id.value
        attributes["nameId"] = name_id.value
        attributes["nameIdFormat"] = name_id_format

    return attributes


def extract_user_name(response: Response) -> str | None:
    """Return the first assertion's NameID value."""
    assertion = _first_assertion(response)
    if assertion is None or assertion.subject is None or assertion.subject.name_id is None:
        return None
    return assertion.subject.name_id.value


def extract_session_index(response: Response) -> str | None:
    """Return the SessionIndex of the first AuthnStatement, if any."""
    assertion = _first_assertion(response)
    if assertion is None:
        return None
    for statement in assertion.authn_statements:
        return statement.session_index
    return None
