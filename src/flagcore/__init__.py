from __future__ import annotations
import re
import enum
import json
import math
import os
import logging
import threading
import time
import dill
import jsonschema
import mmh3
from collections.abc import Callable
from typing import Any, Iterable, Literal, TypeAlias
from copy import deepcopy

from prometheus_client import Histogram


logger = logging.getLogger(__name__)

AttributeValue: TypeAlias = None | str | bool | int | float
Attributes: TypeAlias = dict[str, AttributeValue]
DictConfig: TypeAlias = dict[str, Any]
Reasons: TypeAlias = list[str]

# Reserved attribute used to bucket a user with something other than the user ID.
BUCKETING_ID_ATTRIBUTE = "$opt_bucketing_id"
RESERVED_ATTRIBUTE_PREFIX = "$opt_"

CUSTOM_ATTRIBUTE_CONDITION_TYPE = "custom_attribute"

_HASH_SEED = 1
_MAX_TRAFFIC_VALUE = 10000
_MAX_HASH_VALUE = 1 << 32
# Largest integer magnitude a double represents exactly. Numbers beyond it
# can't be compared consistently across SDKs.
_MAX_SAFE_NUMBER = 1 << 53


def _note(reasons: Reasons | None, level: int, message: str):
    """
    Log the message and record it as a decision reason. Reasons are per call
    lists so evaluation never writes to shared state.
    """
    logger.log(level, message)
    if reasons is not None:
        reasons.append(message)


def _render(value: Any) -> str:
    return json.dumps(value, default=str)


# Three valued logic


class Tri(enum.Enum):
    """
    Result of evaluating a condition: TRUE, FALSE or UNKNOWN. UNKNOWN means
    the condition could not be evaluated and is distinct from FALSE. It
    propagates through AND/OR and only becomes FALSE where a caller explicitly
    collapses it.

    Truth testing a Tri raises TypeError, compare with the members instead.
    """

    TRUE = True
    FALSE = False
    UNKNOWN = None

    @staticmethod
    def of(value: bool | None) -> Tri:
        return Tri(value)

    def __bool__(self):
        raise TypeError("Tri has no truth value, use collapse() or compare with Tri members")

    def negate(self) -> Tri:
        match self:
            case Tri.TRUE:
                return Tri.FALSE
            case Tri.FALSE:
                return Tri.TRUE
        return Tri.UNKNOWN

    def collapse(self) -> bool:
        return self is Tri.TRUE

    @staticmethod
    def and_(results: Iterable[Tri]) -> Tri:
        """
        FALSE as soon as any result is FALSE, otherwise UNKNOWN if any result is
        UNKNOWN, otherwise TRUE. Results are consumed lazily so a generator
        short-circuits on the first FALSE.
        """
        saw_unknown = False
        for r in results:
            if r is Tri.FALSE:
                return Tri.FALSE
            if r is Tri.UNKNOWN:
                saw_unknown = True
        return Tri.UNKNOWN if saw_unknown else Tri.TRUE

    @staticmethod
    def or_(results: Iterable[Tri]) -> Tri:
        """
        TRUE as soon as any result is TRUE, otherwise UNKNOWN if any result is
        UNKNOWN, otherwise FALSE.
        """
        saw_unknown = False
        for r in results:
            if r is Tri.TRUE:
                return Tri.TRUE
            if r is Tri.UNKNOWN:
                saw_unknown = True
        return Tri.UNKNOWN if saw_unknown else Tri.FALSE


# Condition trees


class Operator(enum.StrEnum):
    AND = "and"
    OR = "or"
    NOT = "not"


_operator_tokens = {o.value for o in Operator}


def _is_leaf(node: Any) -> bool:
    # Audience combinations have audience IDs as leaves, audience conditions
    # have condition dicts as leaves.
    if isinstance(node, str):
        return True
    return isinstance(node, dict) and all(isinstance(k, str) for k in node)


def evaluate_condition_tree(node: Any, leaf_evaluator: Callable[[Any], Tri]) -> Tri:
    """
    Evaluate a nested and/or/not condition tree with the given leaf evaluator.

    A node is either a leaf (string or dict) handed to leaf_evaluator, or a
    list of child nodes optionally prefixed with an operator token. Lists
    without an operator token are OR-ed together, which is how legacy audience
    ID lists are expressed. NOT only looks at its first child.

    Nodes that are neither leaves nor lists evaluate to UNKNOWN.
    """
    if _is_leaf(node):
        return leaf_evaluator(node)
    if not isinstance(node, (list, tuple)):
        return Tri.UNKNOWN

    children = node
    operator = Operator.OR
    if children and isinstance(children[0], str) and children[0] in _operator_tokens:
        operator = Operator(children[0])
        children = children[1:]

    results = (evaluate_condition_tree(c, leaf_evaluator) for c in children)
    match operator:
        case Operator.AND:
            return Tri.and_(results)
        case Operator.OR:
            return Tri.or_(results)
        case Operator.NOT:
            if not children:
                return Tri.UNKNOWN
            return evaluate_condition_tree(children[0], leaf_evaluator).negate()
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover


# Semantic versions

_numeric_part_re = re.compile(r"[0-9]+")
_whitespace_re = re.compile(r"\s")


def _is_pre_release(version: str) -> bool:
    # Whichever of '-' and '+' comes first decides the kind of suffix.
    pre = version.find("-")
    if pre < 0:
        return False
    build = version.find("+")
    return build < 0 or pre < build


def _is_build(version: str) -> bool:
    build = version.find("+")
    if build < 0:
        return False
    pre = version.find("-")
    return pre < 0 or build < pre


def _split_semver(version: str) -> list[str] | None:
    """
    Split the version into its numeric parts followed by the pre-release or
    build suffix as a single trailing part. Returns None for invalid versions.
    """
    if _whitespace_re.search(version):
        return None
    prefix, suffix = version, None
    if _is_pre_release(version):
        prefix, suffix = version.split("-", 1)
    elif _is_build(version):
        prefix, suffix = version.split("+", 1)
    if prefix.count(".") > 2:
        return None
    parts = prefix.split(".")
    if not all(_numeric_part_re.fullmatch(p) for p in parts):
        return None
    if suffix is not None:
        # An empty suffix is still a suffix: "1.2.3-" is a pre-release.
        parts.append(suffix)
    return parts


def compare_semver(target: str, user: str) -> int | None:
    """
    Compare the user version against the target version. Returns 1 if the user
    version is greater, -1 if it's smaller, 0 if they are equal and None if
    either version can't be parsed.

    Only as many parts as the target has are compared. "2.0" therefore equals
    "2.0.1". This is not SemVer precedence, it matches how the other SDKs
    compare versions.
    """
    if not isinstance(target, str) or not isinstance(user, str):
        return None
    target_parts = _split_semver(target)
    if target_parts is None:
        return None
    user_parts = _split_semver(user)
    if user_parts is None:
        return None

    target_pre = _is_pre_release(target)
    user_pre = _is_pre_release(user)

    for idx, target_part in enumerate(target_parts):
        if idx >= len(user_parts):
            # A less precise user version is greater than a pre-release target
            # and smaller than anything else.
            return 1 if target_pre else -1
        user_part = user_parts[idx]
        user_numeric = _numeric_part_re.fullmatch(user_part) is not None
        target_numeric = _numeric_part_re.fullmatch(target_part) is not None
        if user_numeric and target_numeric:
            u, t = int(user_part), int(target_part)
            if u > t:
                return 1
            if u < t:
                return -1
        elif not user_numeric:
            u, t = user_part.lower(), target_part.lower()
            if u < t:
                return 1 if target_pre and not user_pre else -1
            if u > t:
                return -1 if not target_pre and user_pre else 1
        else:
            return -1

    # 1.0.0-beta < 1.0.0
    if user_pre and not target_pre:
        return -1
    return 0


# Custom attribute conditions


class MatchType(enum.StrEnum):
    EXACT = "exact"
    EXISTS = "exists"
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"
    SUBSTRING = "substring"
    SEMVER_EQ = "semver_eq"
    SEMVER_GT = "semver_gt"
    SEMVER_GE = "semver_ge"
    SEMVER_LT = "semver_lt"
    SEMVER_LE = "semver_le"


_match_types = {m.value for m in MatchType}


def _is_number(v: Any) -> bool:
    # bool is an int subclass but never a number for condition purposes.
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _is_finite_number(v: Any) -> bool:
    if not _is_number(v):
        return False
    if isinstance(v, float) and (math.isnan(v) or math.isinf(v)):
        return False
    return abs(v) <= _MAX_SAFE_NUMBER


def _is_same_type(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return True
    return type(a) is type(b)


def _ordering_matches(match_type: MatchType, ordering: int) -> bool:
    match match_type:
        case MatchType.GT | MatchType.SEMVER_GT:
            return ordering > 0
        case MatchType.GE | MatchType.SEMVER_GE:
            return ordering >= 0
        case MatchType.LT | MatchType.SEMVER_LT:
            return ordering < 0
        case MatchType.LE | MatchType.SEMVER_LE:
            return ordering <= 0
        case MatchType.SEMVER_EQ:
            return ordering == 0
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover


def evaluate_custom_attribute(condition: DictConfig, attributes: Attributes | None, reasons: Reasons | None = None) -> Tri:
    """
    Evaluate a single custom attribute leaf condition against the user
    attributes.

    Conditions that can't be evaluated (unknown type or match, missing or
    mistyped attribute values, invalid versions) evaluate to UNKNOWN, never
    FALSE. Every UNKNOWN is explained with a message which is logged and, when
    reasons is given, appended to it.
    """
    if attributes is None:
        attributes = {}
    rendered = _render(condition)

    if not isinstance(condition, dict) or condition.get("type") != CUSTOM_ATTRIBUTE_CONDITION_TYPE:
        _note(reasons, logging.WARNING, f"Audience condition {rendered} uses an unknown condition type.")
        return Tri.UNKNOWN
    name = condition.get("name")
    value = condition.get("value")

    match_name = condition.get("match")
    if match_name is None:
        match_name = MatchType.EXACT.value
    if not isinstance(match_name, str) or match_name not in _match_types:
        _note(reasons, logging.WARNING, f"Audience condition {rendered} uses an unknown match type.")
        return Tri.UNKNOWN
    match_type = MatchType(match_name)

    present = isinstance(name, str) and name in attributes

    if match_type is MatchType.EXISTS:
        return Tri.of(present and attributes[name] is not None)

    if not present:
        _note(
            reasons,
            logging.DEBUG,
            f'Audience condition {rendered} evaluated to UNKNOWN because no value was passed for user attribute "{name}".',
        )
        return Tri.UNKNOWN
    user_value = attributes[name]
    if user_value is None:
        _note(
            reasons,
            logging.DEBUG,
            f'Audience condition {rendered} evaluated to UNKNOWN because a null value was passed for user attribute "{name}".',
        )
        return Tri.UNKNOWN

    def unknown_condition_value() -> Tri:
        _note(reasons, logging.WARNING, f"Audience condition {rendered} has an unsupported condition value.")
        return Tri.UNKNOWN

    def unexpected_type() -> Tri:
        _note(
            reasons,
            logging.WARNING,
            f'Audience condition {rendered} evaluated to UNKNOWN because a value of type "{type(user_value).__name__}" was passed for user attribute "{name}".',
        )
        return Tri.UNKNOWN

    def infinite_value() -> Tri:
        _note(
            reasons,
            logging.WARNING,
            f'Audience condition {rendered} evaluated to UNKNOWN because the number value for user attribute "{name}" is not in the range [-2^53, +2^53].',
        )
        return Tri.UNKNOWN

    match match_type:
        case MatchType.EXACT:
            if not (isinstance(value, (str, bool)) or _is_finite_number(value)):
                return unknown_condition_value()
            if not (isinstance(user_value, (str, bool)) or _is_number(user_value)) or not _is_same_type(value, user_value):
                return unexpected_type()
            if _is_number(user_value) and not _is_finite_number(user_value):
                return infinite_value()
            return Tri.of(value == user_value)

        case MatchType.GT | MatchType.GE | MatchType.LT | MatchType.LE:
            if not _is_finite_number(value):
                return unknown_condition_value()
            if not _is_number(user_value):
                return unexpected_type()
            if not _is_finite_number(user_value):
                return infinite_value()
            ordering = (user_value > value) - (user_value < value)
            return Tri.of(_ordering_matches(match_type, ordering))

        case MatchType.SUBSTRING:
            if not isinstance(value, str):
                return unknown_condition_value()
            if not isinstance(user_value, str):
                return unexpected_type()
            return Tri.of(value in user_value)

        case _:
            if not isinstance(value, str) or not value:
                return unknown_condition_value()
            if not isinstance(user_value, str):
                return unexpected_type()
            ordering = compare_semver(value, user_value)
            if ordering is None:
                _note(
                    reasons,
                    logging.WARNING,
                    f'Audience condition {rendered} evaluated to UNKNOWN because of an invalid version format for user attribute "{name}".',
                )
                return Tri.UNKNOWN
            return Tri.of(_ordering_matches(match_type, ordering))


# Datafile entities. All entities are built field by field from the datafile
# and never mutated afterwards.


class Variation:
    __slots__ = ("id", "key", "feature_enabled", "variable_values")
    id: str
    key: str
    feature_enabled: bool
    # Variable ID to raw (string encoded) variable value.
    variable_values: dict[str, str]


class TrafficAllocation:
    __slots__ = ("entity_id", "end_of_range")
    # Variation ID for experiments, experiment ID for groups. Empty string
    # marks a range no one is bucketed into.
    entity_id: str
    # Exclusive upper bound in [0, 10000].
    end_of_range: int


class Experiment:
    """
    An A/B experiment or a rollout rule. Both are bucketed the same way.
    """

    __slots__ = (
        "id",
        "key",
        "status",
        "layer_id",
        "group_id",
        "group_policy",
        "variations",
        "traffic_allocation",
        "audience_ids",
        "audience_conditions",
        "forced_variations",
    )
    id: str
    key: str
    status: str
    layer_id: str
    group_id: str
    group_policy: str
    # Variation ID to variation, in datafile order.
    variations: dict[str, Variation]
    traffic_allocation: list[TrafficAllocation]
    audience_ids: list[str]
    audience_conditions: Any | None
    # User ID to variation key.
    forced_variations: dict[str, str]

    def is_running(self) -> bool:
        return self.status == "Running"


class Group:
    __slots__ = ("id", "policy", "traffic_allocation", "experiment_ids")
    id: str
    policy: str
    traffic_allocation: list[TrafficAllocation]
    experiment_ids: list[str]


class Audience:
    __slots__ = ("id", "name", "conditions")
    id: str
    name: str
    conditions: Any


class Rollout:
    __slots__ = ("id", "rules")
    id: str
    # The last rule is the "Everyone Else" rule.
    rules: list[Experiment]


class FeatureVariable:
    __slots__ = ("id", "key", "type", "default_value")
    id: str
    key: str
    type: Literal["boolean", "integer", "double", "string", "json"]
    default_value: str


class FeatureFlag:
    __slots__ = ("id", "key", "experiment_ids", "rollout_id", "variables")
    id: str
    key: str
    experiment_ids: list[str]
    rollout_id: str
    # Variable key to variable.
    variables: dict[str, FeatureVariable]


class Attribute:
    __slots__ = ("id", "key")
    id: str
    key: str


def _build_traffic_allocation(entries: list[DictConfig]) -> list[TrafficAllocation]:
    allocation = []
    for entry in entries:
        ta = TrafficAllocation()
        ta.entity_id = entry["entityId"]
        ta.end_of_range = entry["endOfRange"]
        allocation.append(ta)
    return allocation


def _build_variation(v: DictConfig) -> Variation:
    variation = Variation()
    variation.id = v["id"]
    variation.key = v["key"]
    variation.feature_enabled = bool(v.get("featureEnabled", False))
    variation.variable_values = {u["id"]: u["value"] for u in v.get("variables", [])}
    return variation


def _build_experiment(e: DictConfig, group_id: str = "", group_policy: str = "") -> Experiment:
    experiment = Experiment()
    experiment.id = e["id"]
    experiment.key = e["key"]
    experiment.status = e.get("status", "")
    experiment.layer_id = e.get("layerId", "")
    experiment.group_id = group_id
    experiment.group_policy = group_policy
    experiment.variations = {v.id: v for v in map(_build_variation, e.get("variations", []))}
    experiment.traffic_allocation = _build_traffic_allocation(e.get("trafficAllocation", []))
    experiment.audience_ids = list(e.get("audienceIds", []))
    experiment.audience_conditions = e.get("audienceConditions")
    experiment.forced_variations = dict(e.get("forcedVariations") or {})
    return experiment


def _build_audience(a: DictConfig) -> Audience:
    audience = Audience()
    audience.id = a["id"]
    audience.name = a.get("name", "")
    conditions = a["conditions"]
    if isinstance(conditions, str):
        # Legacy audiences carry their conditions as a JSON string, typed
        # audiences as structured conditions.
        try:
            conditions = json.loads(conditions)
        except json.JSONDecodeError as e:
            raise ValueError(f"audience {audience.id} has undecodable conditions") from e
    audience.conditions = conditions
    return audience


def _build_feature_variable(v: DictConfig) -> FeatureVariable:
    variable = FeatureVariable()
    variable.id = v["id"]
    variable.key = v["key"]
    variable.type = v["type"]
    # JSON variables are declared as strings with a json sub type for
    # backwards compatibility.
    if v["type"] == "string" and v.get("subType") == "json":
        variable.type = "json"
    variable.default_value = v.get("defaultValue", "")
    return variable


with open(os.path.join(os.path.dirname(__file__), "datafile_schema.json")) as f:
    _datafile_schema = json.load(f)


class ProjectConfig:
    """
    Typed, read-only view of a datafile. A ProjectConfig is an immutable
    snapshot and can be shared between threads.
    """

    __slots__ = (
        "version",
        "account_id",
        "project_id",
        "revision",
        "_experiment_id_map",
        "_experiment_key_map",
        "_group_id_map",
        "_audience_id_map",
        "_attribute_key_map",
        "_rollout_id_map",
        "_feature_key_map",
    )
    version: str
    account_id: str
    project_id: str
    revision: str
    _experiment_id_map: dict[str, Experiment]
    _experiment_key_map: dict[str, Experiment]
    _group_id_map: dict[str, Group]
    _audience_id_map: dict[str, Audience]
    _attribute_key_map: dict[str, Attribute]
    _rollout_id_map: dict[str, Rollout]
    _feature_key_map: dict[str, FeatureFlag]

    @staticmethod
    def from_bytes(b: bytes) -> ProjectConfig:
        obj = dill.loads(b)
        assert isinstance(obj, ProjectConfig)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def from_json(s: str | bytes) -> ProjectConfig:
        return ProjectConfig.from_dict(json.loads(s))

    @staticmethod
    def from_dict(c: DictConfig) -> ProjectConfig:
        """
        Build the config from a parsed datafile. Datafiles that don't match
        the datafile schema raise ValueError.
        """
        try:
            jsonschema.validate(c, _datafile_schema)
        except jsonschema.ValidationError as e:
            raise ValueError(f"invalid datafile: {e.message}") from e

        pc = ProjectConfig()
        pc.version = c["version"]
        pc.account_id = c.get("accountId", "")
        pc.project_id = c.get("projectId", "")
        pc.revision = c.get("revision", "")

        experiments: dict[str, Experiment] = {}
        for e in c.get("experiments", []):
            experiment = _build_experiment(e)
            experiments[experiment.id] = experiment

        # Grouped experiments live under their group and inherit its ID and
        # policy.

        groups: dict[str, Group] = {}
        for g in c.get("groups", []):
            group = Group()
            group.id = g["id"]
            group.policy = g.get("policy", "")
            group.traffic_allocation = _build_traffic_allocation(g.get("trafficAllocation", []))
            group.experiment_ids = []
            for e in g.get("experiments", []):
                experiment = _build_experiment(e, group.id, group.policy)
                group.experiment_ids.append(experiment.id)
                experiments[experiment.id] = experiment
            groups[group.id] = group

        # Rollout rules are indexed alongside experiments so variations of
        # rules resolve the same way.

        rollouts: dict[str, Rollout] = {}
        for r in c.get("rollouts", []):
            rollout = Rollout()
            rollout.id = r["id"]
            rollout.rules = [_build_experiment(e) for e in r.get("experiments", [])]
            for rule in rollout.rules:
                experiments[rule.id] = rule
            rollouts[rollout.id] = rollout

        audiences: dict[str, Audience] = {}
        for a in c.get("audiences", []):
            audience = _build_audience(a)
            audiences[audience.id] = audience
        # Typed audiences override legacy audiences with the same ID.
        for a in c.get("typedAudiences", []):
            audience = _build_audience(a)
            audiences[audience.id] = audience

        attributes: dict[str, Attribute] = {}
        for a in c.get("attributes", []):
            attribute = Attribute()
            attribute.id = a["id"]
            attribute.key = a["key"]
            attributes[attribute.key] = attribute

        features: dict[str, FeatureFlag] = {}
        for f in c.get("featureFlags", []):
            flag = FeatureFlag()
            flag.id = f["id"]
            flag.key = f["key"]
            flag.experiment_ids = list(f.get("experimentIds", []))
            flag.rollout_id = f.get("rolloutId", "")
            flag.variables = {v.key: v for v in map(_build_feature_variable, f.get("variables", []))}
            features[flag.key] = flag

        pc._experiment_id_map = experiments
        pc._experiment_key_map = {e.key: e for e in experiments.values()}
        pc._group_id_map = groups
        pc._audience_id_map = audiences
        pc._attribute_key_map = attributes
        pc._rollout_id_map = rollouts
        pc._feature_key_map = features
        return pc

    def get_experiment_from_key(self, key: str) -> Experiment | None:
        experiment = self._experiment_key_map.get(key)
        if experiment is None:
            logger.error('Experiment key "%s" is not in datafile.', key)
        return experiment

    def get_experiment_from_id(self, id: str) -> Experiment | None:
        experiment = self._experiment_id_map.get(id)
        if experiment is None:
            logger.error('Experiment ID "%s" is not in datafile.', id)
        return experiment

    def get_group(self, id: str) -> Group | None:
        group = self._group_id_map.get(id)
        if group is None:
            logger.error('Group ID "%s" is not in datafile.', id)
        return group

    def get_audience(self, id: str) -> Audience | None:
        audience = self._audience_id_map.get(id)
        if audience is None:
            logger.error('Audience ID "%s" is not in datafile.', id)
        return audience

    def get_rollout(self, id: str) -> Rollout | None:
        rollout = self._rollout_id_map.get(id)
        if rollout is None:
            logger.error('Rollout ID "%s" is not in datafile.', id)
        return rollout

    def get_feature_flag(self, key: str) -> FeatureFlag | None:
        flag = self._feature_key_map.get(key)
        if flag is None:
            logger.error('Feature flag key "%s" is not in datafile.', key)
        return flag

    def get_feature_variable(self, flag_key: str, variable_key: str) -> FeatureVariable | None:
        flag = self.get_feature_flag(flag_key)
        if flag is None:
            return None
        variable = flag.variables.get(variable_key)
        if variable is None:
            logger.error('Variable key "%s" is not in feature flag "%s".', variable_key, flag_key)
        return variable

    def get_variation_from_id(self, experiment_key: str, variation_id: str) -> Variation | None:
        experiment = self.get_experiment_from_key(experiment_key)
        if experiment is None:
            return None
        variation = experiment.variations.get(variation_id)
        if variation is None:
            logger.error('Variation ID "%s" is not in experiment "%s".', variation_id, experiment_key)
        return variation

    def get_variation_from_key(self, experiment_key: str, variation_key: str) -> Variation | None:
        experiment = self.get_experiment_from_key(experiment_key)
        if experiment is None:
            return None
        for variation in experiment.variations.values():
            if variation.key == variation_key:
                return variation
        logger.error('Variation key "%s" is not in experiment "%s".', variation_key, experiment_key)
        return None

    def get_attribute_id(self, key: str) -> str | None:
        """
        Attribute ID for the given attribute key. Undeclared attributes with the
        reserved prefix are passed through as is.
        """
        reserved = key.startswith(RESERVED_ATTRIBUTE_PREFIX)
        attribute = self._attribute_key_map.get(key)
        if attribute is not None:
            if reserved:
                logger.warning(
                    'Attribute %s unexpectedly has reserved prefix %s; using attribute ID instead of reserved attribute name.',
                    key,
                    RESERVED_ATTRIBUTE_PREFIX,
                )
            return attribute.id
        if reserved:
            return key
        logger.error('Attribute "%s" is not in datafile.', key)
        return None

    @property
    def experiments(self) -> list[Experiment]:
        return list(self._experiment_id_map.values())

    @property
    def feature_flags(self) -> list[FeatureFlag]:
        return list(self._feature_key_map.values())


# Bucketing


def _bucket_value(bucketing_key: str) -> int:
    """
    Hashes the bucketing key to an integer in the range [0, 10000).

    Stability of this function is crucial. Every SDK hashes the UTF-8 bytes of
    the key with MurmurHash3 x86_32 and seed 1, so a user lands in the same
    bucket regardless of the language evaluating the flag.
    """
    hash_code = mmh3.hash(bucketing_key, seed=_HASH_SEED, signed=False)
    return hash_code * _MAX_TRAFFIC_VALUE // _MAX_HASH_VALUE


def _find_bucket(
    bucketing_id: str,
    user_id: str,
    parent_id: str,
    traffic_allocation: list[TrafficAllocation],
    reasons: Reasons,
) -> str | None:
    value = _bucket_value(bucketing_id + parent_id)
    _note(reasons, logging.DEBUG, f'Assigned bucket {value} to user "{user_id}" with bucketing ID "{bucketing_id}".')
    # Ranges are not assumed to be sorted or contiguous. First match wins.
    for allocation in traffic_allocation:
        if value < allocation.end_of_range:
            return allocation.entity_id
    return None


def bucket(
    config: ProjectConfig,
    experiment: Experiment | None,
    bucketing_id: str,
    user_id: str,
) -> tuple[Variation | None, Reasons]:
    """
    Bucket the user into a variation of the experiment or rollout rule.

    Experiments in a random policy group first have to win the group's traffic
    allocation. Returns the variation, or None if the user falls into no
    variation, along with the reasons for the decision.
    """
    if config is None:
        raise TypeError("config must be a ProjectConfig, not None")
    reasons: Reasons = []
    if experiment is None or not experiment.id:
        return None, reasons

    if experiment.group_id:
        group = config.get_group(experiment.group_id)
        if group is None:
            reasons.append(f'Group ID "{experiment.group_id}" is not in datafile.')
            return None, reasons
        if group.policy == "random":
            experiment_id = _find_bucket(bucketing_id, user_id, group.id, group.traffic_allocation, reasons)
            if experiment_id != experiment.id:
                _note(reasons, logging.INFO, f'User "{user_id}" is not in experiment {experiment.key} of group {group.id}.')
                return None, reasons
            _note(reasons, logging.INFO, f'User "{user_id}" is in experiment {experiment.key} of group {group.id}.')

    variation_id = _find_bucket(bucketing_id, user_id, experiment.id, experiment.traffic_allocation, reasons)
    if variation_id is None:
        _note(reasons, logging.INFO, f'User "{user_id}" is in no variation of experiment {experiment.key}.')
        return None, reasons
    if variation_id == "":
        _note(reasons, logging.DEBUG, "Bucketed into an empty traffic range. Returning None.")
        return None, reasons
    variation = experiment.variations.get(variation_id)
    if variation is None:
        _note(reasons, logging.WARNING, f'Variation ID "{variation_id}" is not in experiment "{experiment.key}".')
        return None, reasons
    _note(reasons, logging.INFO, f'User "{user_id}" is in variation {variation.key} of experiment {experiment.key}.')
    return variation, reasons


# Audiences


def is_user_in_experiment(
    config: ProjectConfig,
    experiment: Experiment,
    attributes: Attributes | None,
    logging_key: str | None = None,
    kind: Literal["experiment", "rule"] = "experiment",
) -> tuple[bool, Reasons]:
    """
    Determine whether the user meets the audience conditions of the experiment
    or rollout rule.

    The experiment's audience condition tree is preferred over its plain list
    of audience IDs. Each audience ID is resolved against the config and its
    own conditions evaluated with evaluate_custom_attribute. UNKNOWN becomes
    False only for the final result.
    """
    if config is None:
        raise TypeError("config must be a ProjectConfig, not None")
    reasons: Reasons = []
    if logging_key is None:
        logging_key = experiment.key

    conditions = experiment.audience_conditions
    if conditions is None:
        conditions = experiment.audience_ids
    if not conditions:
        _note(reasons, logging.INFO, f'No audience attached to {kind} "{logging_key}". Evaluated to TRUE.')
        return True, reasons

    if attributes is None:
        attributes = {}

    _note(reasons, logging.DEBUG, f'Evaluating audiences for {kind} "{logging_key}": {_render(conditions)}.')

    def evaluate_leaf(leaf: DictConfig) -> Tri:
        return evaluate_custom_attribute(leaf, attributes, reasons)

    def evaluate_audience(audience_id: Any) -> Tri:
        audience = config.get_audience(audience_id) if isinstance(audience_id, str) else None
        if audience is None:
            reasons.append(f'Audience "{audience_id}" is not in datafile.')
            return Tri.UNKNOWN
        _note(
            reasons,
            logging.DEBUG,
            f'Starting to evaluate audience "{audience_id}" with conditions: {_render(audience.conditions)}.',
        )
        result = evaluate_condition_tree(audience.conditions, evaluate_leaf)
        _note(reasons, logging.DEBUG, f'Audience "{audience_id}" evaluated to {result.name}.')
        return result

    result = evaluate_condition_tree(conditions, evaluate_audience)
    _note(reasons, logging.INFO, f'Audiences for {kind} "{logging_key}" collectively evaluated to {result.name}.')
    return result.collapse(), reasons


# Decisions


class FeatureDecision:
    """
    The experiment or rollout rule and variation a feature flag resolved to.
    Both are None if the user is in neither a feature test nor a rollout.
    """

    __slots__ = ("experiment", "variation", "source")
    experiment: Experiment | None
    variation: Variation | None
    source: Literal["feature-test", "rollout"]


def _feature_decision(
    experiment: Experiment | None,
    variation: Variation | None,
    source: Literal["feature-test", "rollout"],
) -> FeatureDecision:
    d = FeatureDecision()
    d.experiment = experiment
    d.variation = variation
    d.source = source
    return d


def get_bucketing_id(user_id: str, attributes: Attributes | None) -> tuple[str, Reasons]:
    """
    The ID used for bucketing. Defaults to the user ID but can be overridden
    with the $opt_bucketing_id attribute.
    """
    reasons: Reasons = []
    bucketing_id = (attributes or {}).get(BUCKETING_ID_ATTRIBUTE)
    if bucketing_id is not None:
        if isinstance(bucketing_id, str):
            return bucketing_id, reasons
        _note(reasons, logging.WARNING, "Bucketing ID attribute is not a string. Defaulted to user ID.")
    return user_id, reasons


def get_forced_variation(config: ProjectConfig, experiment: Experiment, user_id: str) -> tuple[Variation | None, Reasons]:
    reasons: Reasons = []
    variation_key = experiment.forced_variations.get(user_id)
    if variation_key is None:
        return None, reasons
    variation = config.get_variation_from_key(experiment.key, variation_key)
    if variation is not None:
        _note(reasons, logging.INFO, f'User "{user_id}" is forced in variation "{variation_key}" of experiment "{experiment.key}".')
    return variation, reasons


def get_variation(
    config: ProjectConfig,
    experiment: Experiment,
    user_id: str,
    attributes: Attributes | None = None,
) -> tuple[Variation | None, Reasons]:
    """
    Variation of a running experiment for the user. Whitelisted users get
    their forced variation, everyone else has to pass the audience conditions
    before being bucketed.
    """
    reasons: Reasons = []
    if not experiment.is_running():
        _note(reasons, logging.INFO, f'Experiment "{experiment.key}" is not running.')
        return None, reasons

    variation, r = get_forced_variation(config, experiment, user_id)
    reasons += r
    if variation is not None:
        return variation, reasons

    in_experiment, r = is_user_in_experiment(config, experiment, attributes)
    reasons += r
    if not in_experiment:
        _note(reasons, logging.INFO, f'User "{user_id}" does not meet conditions to be in experiment "{experiment.key}".')
        return None, reasons

    bucketing_id, r = get_bucketing_id(user_id, attributes)
    reasons += r
    variation, r = bucket(config, experiment, bucketing_id, user_id)
    reasons += r
    return variation, reasons


def get_variation_for_rollout(
    config: ProjectConfig,
    flag: FeatureFlag,
    user_id: str,
    attributes: Attributes | None = None,
) -> tuple[FeatureDecision | None, Reasons]:
    """
    Evaluate the rollout rules of the flag in order. A user who doesn't meet a
    rule's audience moves on to the next rule. A user who meets the audience
    but misses the rule's traffic skips straight to the last, "Everyone Else",
    rule.
    """
    reasons: Reasons = []
    if not flag.rollout_id:
        _note(reasons, logging.DEBUG, f'Feature flag "{flag.key}" is not used in a rollout.')
        return None, reasons
    rollout = config.get_rollout(flag.rollout_id)
    if rollout is None or not rollout.rules:
        _note(reasons, logging.DEBUG, f'Rollout "{flag.rollout_id}" of feature flag "{flag.key}" has no rules.')
        return None, reasons

    bucketing_id, r = get_bucketing_id(user_id, attributes)
    reasons += r

    rules = rollout.rules
    everyone_else_index = len(rules) - 1
    index = 0
    while index < len(rules):
        rule = rules[index]
        logging_key = "Everyone Else" if index == everyone_else_index else str(index + 1)

        in_audience, r = is_user_in_experiment(config, rule, attributes, logging_key=logging_key, kind="rule")
        reasons += r
        if not in_audience:
            _note(reasons, logging.DEBUG, f'User "{user_id}" does not meet audience conditions for targeting rule {logging_key}.')
            index += 1
            continue
        _note(reasons, logging.DEBUG, f'User "{user_id}" meets audience conditions for targeting rule {logging_key}.')

        variation, r = bucket(config, rule, bucketing_id, user_id)
        reasons += r
        if variation is not None:
            _note(reasons, logging.DEBUG, f'User "{user_id}" is in the traffic group of targeting rule {logging_key}.')
            return _feature_decision(rule, variation, "rollout"), reasons
        if index == everyone_else_index:
            break
        _note(
            reasons,
            logging.DEBUG,
            f'User "{user_id}" is not in the traffic group for targeting rule {logging_key}. Checking "Everyone Else" rule now.',
        )
        index = everyone_else_index

    return None, reasons


def get_variation_for_feature(
    config: ProjectConfig,
    flag: FeatureFlag,
    user_id: str,
    attributes: Attributes | None = None,
) -> tuple[FeatureDecision, Reasons]:
    """
    Resolve the flag through its feature tests first and its rollout second.
    """
    reasons: Reasons = []
    for experiment_id in flag.experiment_ids:
        experiment = config.get_experiment_from_id(experiment_id)
        if experiment is None:
            continue
        variation, r = get_variation(config, experiment, user_id, attributes)
        reasons += r
        if variation is not None:
            _note(
                reasons,
                logging.DEBUG,
                f'User "{user_id}" is in variation {variation.key} of experiment {experiment.key} for feature flag "{flag.key}".',
            )
            return _feature_decision(experiment, variation, "feature-test"), reasons

    decision, r = get_variation_for_rollout(config, flag, user_id, attributes)
    reasons += r
    if decision is not None:
        return decision, reasons
    _note(reasons, logging.INFO, f'User "{user_id}" is not in any variation or rollout rule of feature flag "{flag.key}".')
    return _feature_decision(None, None, "rollout"), reasons


def cast_variable_value(value: Any, variable_type: str) -> Any:
    """
    Cast the string encoded variable value to its declared type. Returns None
    if the value can't be cast.
    """
    if isinstance(value, str):
        try:
            match variable_type:
                case "string":
                    return value
                case "boolean":
                    return value.lower() == "true"
                case "integer":
                    return int(value)
                case "double":
                    return float(value)
                case "json":
                    return json.loads(value)
        except ValueError:
            pass
    logger.error('Unable to cast variable value "%s" to type "%s".', value, variable_type)
    return None


def get_feature_variable_value(
    config: ProjectConfig,
    flag_key: str,
    variable_key: str,
    user_id: str,
    attributes: Attributes | None = None,
) -> tuple[Any, Reasons]:
    """
    Value of the feature variable for the user. Users in a variation with the
    feature enabled get the variation's value, everyone else the default.
    """
    reasons: Reasons = []
    flag = config.get_feature_flag(flag_key)
    if flag is None:
        reasons.append(f'Feature flag key "{flag_key}" is not in datafile.')
        return None, reasons
    variable = config.get_feature_variable(flag_key, variable_key)
    if variable is None:
        reasons.append(f'Variable key "{variable_key}" is not in feature flag "{flag_key}".')
        return None, reasons

    decision, r = get_variation_for_feature(config, flag, user_id, attributes)
    reasons += r

    value = variable.default_value
    if decision.variation is None:
        _note(
            reasons,
            logging.INFO,
            f'User "{user_id}" is not in any variation or rollout rule. Returning default value for variable "{variable_key}" of feature flag "{flag_key}".',
        )
    elif decision.variation.feature_enabled:
        value = decision.variation.variable_values.get(variable.id, variable.default_value)
        _note(reasons, logging.INFO, f'Got variable value "{value}" for variable "{variable_key}" of feature flag "{flag_key}".')
    else:
        _note(
            reasons,
            logging.INFO,
            f'Feature "{flag_key}" is not enabled for user "{user_id}". Returning the default variable value "{value}".',
        )
    return cast_variable_value(value, variable.type), reasons


class FlagDecision:
    """
    The result of deciding a feature flag.
    """

    __slots__ = (
        "flag",
        "enabled",
        "variation",
        "rule",
        "source",
        "user_id",
        "reasons",
    )
    flag: str
    enabled: bool
    # Variation key, None if the user is in no variation.
    variation: str | None
    # Experiment or rollout rule key.
    rule: str | Literal[""]
    source: Literal["feature-test", "rollout"]
    user_id: str
    reasons: Reasons


_prom_labels = ["flag", "variation", "source"]
_prom_decision_duration = Histogram(
    "flagcore_decision_seconds",
    "Feature flag decision duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=_prom_labels,
)


class Decider:
    """
    The decider holds the current project config and decides feature flags and
    experiments against it. Configs are swapped atomically, each decision works
    on the single snapshot it started with. The decider is thread-safe.
    """

    def __init__(self):
        self._default_attributes_mu = threading.RLock()
        self._default_attributes: Attributes = {}
        self._config_mu = threading.RLock()
        self._config: ProjectConfig | None = None

    def _get_default_attributes(self):
        with self._default_attributes_mu:
            attrs = self._default_attributes
        return attrs

    def _get_config(self) -> ProjectConfig:
        with self._config_mu:
            config = self._config
        if config is None:
            raise RuntimeError("config not loaded")
        return config

    @staticmethod
    def _validate_attributes_type(attributes: Attributes):
        if not isinstance(attributes, dict):
            raise TypeError(f"attributes must be a dict, not {type(attributes).__name__}")
        for k, v in attributes.items():
            if not isinstance(k, str):
                raise TypeError(f"attribute key must be a string, not {type(k).__name__}")
            if not isinstance(v, (str, int, float, bool, type(None))):
                raise TypeError(f"attribute value must be a string, int, float, bool, None, not {type(v).__name__}")

    def _prepare(self, user_id: str, attributes: Attributes) -> tuple[ProjectConfig, Attributes]:
        self._validate_attributes_type(attributes)
        if not isinstance(user_id, str):
            raise TypeError(f"user_id must be a string, not {type(user_id).__name__}")
        merged_attributes = {**self._get_default_attributes(), **attributes}
        return self._get_config(), merged_attributes

    def set_default_attributes(self, attributes: Attributes = {}):
        """
        Set the default attributes to use when making decisions. Attributes
        provided when deciding override these values. set_default_attributes is
        thread-safe.
        """
        self._validate_attributes_type(attributes)
        attributes = deepcopy(attributes)
        with self._default_attributes_mu:
            self._default_attributes = attributes

    def load_config(self, config: ProjectConfig):
        """
        Load the project config into the decider. load_config is thread-safe.
        """
        if not isinstance(config, ProjectConfig):
            raise TypeError(f"config must be a ProjectConfig, not {type(config).__name__}")
        with self._config_mu:
            self._config = config

    def get_variation(self, experiment_key: str, user_id: str, attributes: Attributes = {}) -> str | None:
        """
        Key of the variation the user is in for the given experiment, None if
        the user is in none. get_variation is thread-safe.
        """
        config, merged_attributes = self._prepare(user_id, attributes)
        experiment = config.get_experiment_from_key(experiment_key)
        if experiment is None:
            raise ValueError(f"Experiment {experiment_key} does not exist in the config")
        variation, _ = get_variation(config, experiment, user_id, merged_attributes)
        return None if variation is None else variation.key

    def _record_decision_metrics(self, d: FlagDecision, dur: float):
        labels = {
            "flag": d.flag,
            "variation": str(d.variation),
            "source": d.source,
        }
        _prom_decision_duration.labels(**labels).observe(dur)

    def decide_all(self, flag_keys: Iterable[str], user_id: str, attributes: Attributes = {}) -> dict[str, FlagDecision]:
        """
        Decide all the given flags for the user. decide_all is thread-safe.
        """
        config, merged_attributes = self._prepare(user_id, attributes)

        decisions: dict[str, FlagDecision] = {}
        for key in set(flag_keys):
            flag = config.get_feature_flag(key)
            if flag is None:
                raise ValueError(f"Flag {key} does not exist in the config")
            start = time.perf_counter()
            fd, reasons = get_variation_for_feature(config, flag, user_id, merged_attributes)
            dur = time.perf_counter() - start
            d = FlagDecision()
            d.flag = key
            d.user_id = user_id
            d.variation = None if fd.variation is None else fd.variation.key
            d.enabled = fd.variation is not None and fd.variation.feature_enabled
            d.rule = "" if fd.experiment is None else fd.experiment.key
            d.source = fd.source
            d.reasons = reasons
            self._record_decision_metrics(d, dur)
            decisions[key] = d
        return decisions

    def decide(self, flag_key: str, user_id: str, attributes: Attributes = {}) -> FlagDecision:
        """
        Decide the given flag. decide is thread-safe.

        flag_key: The key of the feature flag.
        user_id: The ID of the user.
        attributes: The attributes to decide the flag with.
        """
        return self.decide_all([flag_key], user_id, attributes)[flag_key]

    def is_feature_enabled(self, flag_key: str, user_id: str, attributes: Attributes = {}) -> bool:
        return self.decide(flag_key, user_id, attributes).enabled

    def get_feature_variable(self, flag_key: str, variable_key: str, user_id: str, attributes: Attributes = {}) -> Any:
        """
        Typed value of the feature variable for the user. get_feature_variable
        is thread-safe.
        """
        config, merged_attributes = self._prepare(user_id, attributes)
        if config.get_feature_flag(flag_key) is None:
            raise ValueError(f"Flag {flag_key} does not exist in the config")
        if config.get_feature_variable(flag_key, variable_key) is None:
            raise ValueError(f"Variable {variable_key} does not exist in flag {flag_key}")
        value, _ = get_feature_variable_value(config, flag_key, variable_key, user_id, merged_attributes)
        return value
