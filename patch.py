import logging

from models import Patch, PatchAction, PatchOp

LOG = logging.getLogger(__name__)


def json_patch_escape(val):
    return val.replace("~", "~0").replace("/", "~1")


def mutate_annotations(
    target: dict[str, str] | None, added: dict[str, str]
) -> list[PatchAction]:
    """Return the patch operations that set each of `added` on an object
    whose current annotations are `target`.

    A missing (or empty) annotation is created with an `add` of a
    single-entry mapping at /metadata/annotations; an existing one is
    replaced in place with its new value.

    The `add` sets the whole annotations object, so any annotations the
    object already carries are dropped when the patch is applied.
    """

    patch = []
    for key, value in added.items():
        if not target or not target.get(key):
            patch.append(
                PatchAction(
                    op=PatchOp.ADD,
                    path="/metadata/annotations",
                    value={key: value},
                )
            )
        else:
            patch.append(
                PatchAction(
                    op=PatchOp.REPLACE,
                    path=f"/metadata/annotations/{json_patch_escape(key)}",
                    value=value,
                )
            )

    LOG.debug("annotation patch: %s", patch)
    return patch


def marshal_patch(actions: list[PatchAction]) -> bytes:
    return Patch(actions).model_dump_json(exclude_none=True).encode()
