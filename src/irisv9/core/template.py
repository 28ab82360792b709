import re

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def interpolate(template, variables):
    """
    Replace every {{name}} placeholder with variables[name].

    Placeholders without a matching key stay in place. Substitution is a single
    pass over the template, so text coming from a value is never re-scanned for
    further placeholders.
    """
    if not variables:
        return template

    def _substitute(match):
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return str(variables[name])

    return PLACEHOLDER_PATTERN.sub(_substitute, template)


def placeholders(template):
    """Names of all placeholders in a template, in order of first appearance"""
    seen = []
    for name in PLACEHOLDER_PATTERN.findall(template):
        if name not in seen:
            seen.append(name)
    return seen
