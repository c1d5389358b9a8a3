"""
Pipeline definition parser and validator.

A definition names the trigger rules, the pinned runtime and tools, the
three build stages and the publish target. Stage identity and order are
fixed here; nothing about the sequence is computed at run time.
"""

import posixpath
import yaml
from typing import List, Dict, Any, Optional

STAGE_KINDS = ["module", "dependencies", "project"]

DEFAULT_OUTPUTS = {
    "module": "pkg",
    "dependencies": "node_modules",
    "project": "dist",
}

RUNTIME_METHODS = {"node-dist"}
TOOL_METHODS = {"script", "npm"}
PUBLISH_PROVIDERS = {"cloudflare-pages"}

class PipelineConfigError(Exception):
    """Raised when pipeline configuration is invalid."""
    pass

def parse_pipeline_config(yaml_content: str) -> Dict[str, Any]:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return validate_config(config)

def load_pipeline_file(path: str) -> Dict[str, Any]:
    """Read and validate a pipeline definition file."""
    try:
        with open(path, "r") as f:
            content = f.read()
    except OSError as e:
        raise PipelineConfigError(f"Cannot read pipeline file {path}: {e}")

    return parse_pipeline_config(content)

def parse_pipeline_dict(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def validate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineConfigError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineConfigError("Pipeline configuration must be a dictionary")

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise PipelineConfigError("Pipeline 'name' must be a string")

    trigger = validate_trigger(config.get("trigger", {}))

    defaults = config.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise PipelineConfigError("Pipeline 'defaults' must be a dictionary")
    working_directory = validate_relative_path(
        defaults.get("working_directory", "."), "defaults.working_directory"
    )

    if "runtime" not in config:
        raise PipelineConfigError("Pipeline must have a 'runtime' defined")
    runtime = validate_runtime(config["runtime"])

    tools = config.get("tools", []) or []
    if not isinstance(tools, list):
        raise PipelineConfigError("Pipeline 'tools' must be a list")
    validated_tools = [validate_tool(tool, i) for i, tool in enumerate(tools)]

    names = [runtime["name"]] + [tool["name"] for tool in validated_tools]
    if len(set(names)) != len(names):
        raise PipelineConfigError("Runtime and tool names must be unique")

    # Validate steps
    if "stages" not in config:
        raise PipelineConfigError("Pipeline must have 'stages' defined")

    stages = config["stages"]
    if not isinstance(stages, list):
        raise PipelineConfigError("Pipeline 'stages' must be a list")

    validated_stages = []
    for i, stage in enumerate(stages):
        validated_stage = validate_stage(stage, i)
        validated_stages.append(validated_stage)

    kinds = [stage["kind"] for stage in validated_stages]
    if kinds != STAGE_KINDS:
        raise PipelineConfigError(
            f"Pipeline stages must be of kinds {STAGE_KINDS} in that order, got {kinds}"
        )

    if "publish" not in config:
        raise PipelineConfigError("Pipeline must have 'publish' defined")
    publish = validate_publish(config["publish"], working_directory)

    project_output = posixpath.normpath(
        posixpath.join(working_directory, validated_stages[-1]["output"])
    )
    publish_directory = posixpath.normpath(
        posixpath.join(publish["working_directory"], publish["directory"])
    )
    if project_output != publish_directory:
        raise PipelineConfigError(
            f"Publish 'directory' ({publish_directory}) must be the project "
            f"stage output ({project_output})"
        )

    return {
        "name": name,
        "trigger": trigger,
        "working_directory": working_directory,
        "runtime": runtime,
        "tools": validated_tools,
        "stages": validated_stages,
        "publish": publish,
    }

def validate_trigger(trigger: Any) -> Dict[str, Any]:
    """Validate trigger rules. Defaults to manual runs and pushes to main."""
    if trigger is None:
        trigger = {}
    if not isinstance(trigger, dict):
        raise PipelineConfigError("Pipeline 'trigger' must be a dictionary")

    manual = trigger.get("manual", True)
    if not isinstance(manual, bool):
        raise PipelineConfigError("Trigger 'manual' must be a boolean")

    push = trigger.get("push", {}) or {}
    if not isinstance(push, dict):
        raise PipelineConfigError("Trigger 'push' must be a dictionary")

    branches = push.get("branches", ["main"])
    if not isinstance(branches, list) or not branches:
        raise PipelineConfigError("Trigger 'push.branches' must be a non-empty list")
    for branch in branches:
        if not isinstance(branch, str) or not branch:
            raise PipelineConfigError("Trigger branches must be non-empty strings")

    return {"manual": manual, "branches": branches}

def validate_runtime(runtime: Any) -> Dict[str, Any]:
    """Validate the pinned runtime."""
    if not isinstance(runtime, dict):
        raise PipelineConfigError("Pipeline 'runtime' must be a dictionary")

    for field in ("name", "version"):
        if field not in runtime:
            raise PipelineConfigError(f"Runtime missing '{field}'")

    version = str(runtime["version"])
    method = runtime.get("method", "node-dist")
    if method not in RUNTIME_METHODS:
        raise PipelineConfigError(f"Unknown runtime method '{method}'")

    if not version.isdigit():
        raise PipelineConfigError("Runtime 'version' must be a major version number")

    return {
        "name": str(runtime["name"]),
        "version": version,
        "method": method,
        "probe": runtime.get("probe"),
    }

def validate_tool(tool: Any, index: int) -> Dict[str, Any]:
    """Validate a single tool installation."""
    if not isinstance(tool, dict):
        raise PipelineConfigError(f"Tool {index} must be a dictionary")

    if "name" not in tool:
        raise PipelineConfigError(f"Tool {index} missing 'name'")

    if "method" not in tool:
        raise PipelineConfigError(f"Tool {index} missing 'method'")

    method = tool["method"]
    if method not in TOOL_METHODS:
        raise PipelineConfigError(f"Tool {index} has unknown method '{method}'")

    if method == "script" and not tool.get("url"):
        raise PipelineConfigError(f"Tool {index} installed by script needs a 'url'")

    env = tool.get("env", {}) or {}
    if not isinstance(env, dict):
        raise PipelineConfigError(f"Tool {index} 'env' must be a dictionary")

    return {
        "name": str(tool["name"]),
        "method": method,
        "version": str(tool.get("version", "latest")),
        "url": tool.get("url"),
        "env": {str(k): str(v) for k, v in env.items()},
        "bin_dir": tool.get("bin_dir"),
        "probe": tool.get("probe"),
    }

def validate_stage(stage: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single pipeline stage."""
    if not isinstance(stage, dict):
        raise PipelineConfigError(f"Stage {index} must be a dictionary")

    # Required fields
    if "name" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'name'")

    if "kind" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'kind'")

    if "commands" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'commands'")

    # Validate types
    if not isinstance(stage["name"], str):
        raise PipelineConfigError(f"Stage {index} 'name' must be a string")

    if stage["kind"] not in STAGE_KINDS:
        raise PipelineConfigError(f"Stage {index} has unknown kind '{stage['kind']}'")

    if not isinstance(stage["commands"], list) or not stage["commands"]:
        raise PipelineConfigError(f"Stage {index} 'commands' must be a non-empty list")

    for j, cmd in enumerate(stage["commands"]):
        if not isinstance(cmd, str):
            raise PipelineConfigError(f"Stage {index} command {j} must be a string")

    # Unset timeouts fall back to the controller default
    timeout = stage.get("timeout")
    if timeout is not None and (not isinstance(timeout, int) or timeout <= 0):
        raise PipelineConfigError(f"Stage {index} 'timeout' must be a positive integer")

    retries = stage.get("retries", 0)
    if not isinstance(retries, int) or retries < 0:
        raise PipelineConfigError(f"Stage {index} 'retries' must be zero or more")

    output = validate_relative_path(
        stage.get("output", DEFAULT_OUTPUTS[stage["kind"]]), f"stage {index} output"
    )

    return {
        "name": stage["name"],
        "kind": stage["kind"],
        "commands": stage["commands"],
        "output": output,
        "timeout": timeout,
        "retries": retries,
    }

def validate_publish(publish: Any, working_directory: str) -> Dict[str, Any]:
    """Validate the publish target."""
    if not isinstance(publish, dict):
        raise PipelineConfigError("Pipeline 'publish' must be a dictionary")

    provider = publish.get("provider", "cloudflare-pages")
    if provider not in PUBLISH_PROVIDERS:
        raise PipelineConfigError(f"Unknown publish provider '{provider}'")

    if "directory" not in publish:
        raise PipelineConfigError("Publish missing 'directory'")

    timeout = publish.get("timeout")
    if timeout is not None and (not isinstance(timeout, int) or timeout <= 0):
        raise PipelineConfigError("Publish 'timeout' must be a positive integer")

    return {
        "provider": provider,
        "directory": validate_relative_path(publish["directory"], "publish.directory"),
        "working_directory": validate_relative_path(
            publish.get("working_directory", working_directory),
            "publish.working_directory",
        ),
        "timeout": timeout,
    }

def validate_relative_path(value: Any, label: str) -> str:
    """Paths must stay inside the checkout."""
    if not isinstance(value, str) or not value:
        raise PipelineConfigError(f"'{label}' must be a non-empty string")

    normalized = posixpath.normpath(value)
    if posixpath.isabs(normalized) or normalized == ".." or normalized.startswith("../"):
        raise PipelineConfigError(f"'{label}' must be a path inside the repository")

    return normalized

def stage_plan(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Ordered list of persisted steps for a validated definition:
    provisioning first, the build stages, then publishing.
    """
    runtime = config["runtime"]
    plan = [{
        "name": "provision",
        "kind": "provision",
        "commands": [f"install {runtime['name']}@{runtime['version']}"]
        + [f"install {tool['name']}@{tool['version']}" for tool in config["tools"]],
    }]

    for stage in config["stages"]:
        plan.append({
            "name": stage["name"],
            "kind": stage["kind"],
            "commands": stage["commands"],
        })

    publish = config["publish"]
    plan.append({
        "name": "publish",
        "kind": "publish",
        "commands": [f"publish {publish['directory']} to {publish['provider']}"],
    })

    return plan
