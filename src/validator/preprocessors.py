"""
Script preprocessors

Regex rewrites applied to a node's boot script before it is compared with the
whitelist. They mask values that legitimately differ per cluster or per node
(API keys, cluster/node IDs, log endpoints) so a static whitelist can match.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

METADATA_CONFIGURE_SH_KEY = 'configure-sh'
METADATA_USER_DATA_KEY = 'user-data'


@dataclass(frozen=True)
class RegexReplacement:
    pattern: str
    repl: str
    _regexp: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, '_regexp', re.compile(self.pattern))

    def apply(self, script: str) -> str:
        # repl is literal text, never a template
        return self._regexp.sub(lambda _: self.repl, script)


CONFIGURE_SH_PREPROCESSORS: List[RegexReplacement] = [
    RegexReplacement(r'CASTAI_API_KEY=".+"', 'CASTAI_API_KEY=****'),
    RegexReplacement(r'CASTAI_CLUSTER_ID=".+"', 'CASTAI_CLUSTER_ID=****'),
    RegexReplacement(r'CASTAI_NODE_ID=".+"', 'CASTAI_NODE_ID=****'),
    RegexReplacement(r'-H "X-Api-Key: .+?"', '-H "X-Api-Key: ****"'),
    RegexReplacement(
        r'https://.+?/v1/kubernetes/external-clusters/.+?/nodes/.+?/logs',
        'https://****/v1/kubernetes/external-clusters/****/nodes/****/logs',
    ),
]

# user-data is compared as-is
USER_DATA_PREPROCESSORS: List[RegexReplacement] = []

DEFAULT_PREPROCESSORS: Dict[str, List[RegexReplacement]] = {
    METADATA_CONFIGURE_SH_KEY: CONFIGURE_SH_PREPROCESSORS,
    METADATA_USER_DATA_KEY: USER_DATA_PREPROCESSORS,
}


def apply_preprocessors(script: str, rules: Sequence[RegexReplacement]) -> str:
    """Run every rule in order, each one on the output of the previous."""
    for rule in rules:
        script = rule.apply(script)
    return script
