# shipline_workflow.py
# Demo pipeline: build a static site bundle, test it, deploy it to staging.
from __future__ import annotations
from shipline.dsl import wf, job, sh, upload, deploy, use


def workflow():
    return wf(
        job(
            "build",
            sh("Render site", "mkdir -p dist && printf '<h1>hello %s</h1>\\n' \"${SHIPLINE_REF:-local}\" > dist/index.html"),
            sh("Bundle", "tar -cf dist/site.tar -C dist index.html"),
            upload("dist/site.tar"),
            timeout=120,
        ),

        # Lint is advisory: it may fail without stopping the deploy
        job(
            "lint",
            sh("Check html", "grep -q '<h1>' dist/index.html"),
            needs=["build"],
            continue_on_error=True,
        ),

        job(
            "test",
            sh("Bundle contains index", "tar -tf \"$SHIPLINE_INPUT_SITE_TAR\" | grep -qx index.html"),
            inputs=["build/site.tar"],
            timeout=60,
        ),

        job(
            "deploy-staging",
            deploy("staging", "site.tar"),
            needs=["test", "lint"],
            inputs=[use("build/site.tar")],
            tolerates=["lint"],
        ),
    )
