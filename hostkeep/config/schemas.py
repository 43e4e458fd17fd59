"""Configuration file schema for hostkeep."""

STEP_ID_PATTERN = r"^[A-Za-z0-9_.-]+$"

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "hostkeep": {
            "type": "object",
            "properties": {
                "backup_root": {
                    "type": "string",
                    "description": "Directory holding backup_* job directories"
                },
                "min_free_space_gb": {
                    "type": "number",
                    "minimum": 0
                },
                "use_sudo": {
                    "type": "boolean"
                },
                "yes_to_all_covers_destructive": {
                    "type": "boolean",
                    "description": "Whether yes-to-all also approves destructive steps"
                },
                "continue_on_error": {
                    "type": "boolean",
                    "description": "Record failed non-destructive steps and keep going"
                },
                "offer_compress": {
                    "type": "boolean"
                },
                "offer_encrypt": {
                    "type": "boolean"
                },
                "save_passphrase": {
                    "type": "boolean"
                },
                "resumable_imaging": {
                    "type": "boolean"
                },
                "snapshot": {
                    "type": "object",
                    "properties": {
                        "sources": {
                            "type": "array",
                            "items": {"type": "string"},
                            "minItems": 1
                        },
                        "encryption": {
                            "type": "string",
                            "enum": ["none", "repokey", "repokey-blake2", "keyfile", "keyfile-blake2"]
                        }
                    },
                    "additionalProperties": False
                },
                "extra_steps": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {
                                "type": "string",
                                "pattern": STEP_ID_PATTERN
                            },
                            "description": {
                                "type": "string"
                            },
                            "sources": {
                                "type": "array",
                                "items": {"type": "string"},
                                "minItems": 1
                            }
                        },
                        "required": ["id", "sources"],
                        "additionalProperties": False
                    }
                }
            },
            "additionalProperties": False
        }
    },
    "required": ["hostkeep"]
}

DEFAULT_CONFIG = {
    "backup_root": ".",
    "min_free_space_gb": 50,
    "use_sudo": True,
    "yes_to_all_covers_destructive": False,
    "continue_on_error": False,
    "offer_compress": True,
    "offer_encrypt": True,
    "save_passphrase": True,
    "resumable_imaging": True,
    "snapshot": {
        "sources": ["/etc", "/opt", "~"],
        "encryption": "none",
    },
    "extra_steps": [],
}
