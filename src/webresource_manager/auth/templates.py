"""HTML pages shown in the browser when the interactive login completes."""

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
               margin: 40px; text-align: center; background-color: #f0f2f5; color: #333; }
        .container { background-color: #ffffff; padding: 40px; border-radius: 8px;
                     box-shadow: 0 6px 12px rgba(0,0,0,0.15); display: inline-block; max-width: 500px; }
        h1 { font-size: 1.8em; margin-bottom: 20px; }
        p { font-size: 1.1em; line-height: 1.6; }
        .hint { margin-top: 30px; font-size: 0.95em; color: #555; }
"""

SUCCESS_TEMPLATE = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Authentication Successful</title>
    <style>{_STYLE}        h1 {{ color: #2c8c2c; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Authentication Successful</h1>
        <p>You have signed in to the Web Resource Manager.</p>
        <p class="hint">You can close this browser window and return to your editor.</p>
    </div>
</body>
</html>
"""

ERROR_TEMPLATE = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Authentication Failed</title>
    <style>{_STYLE}        h1 {{ color: #d93025; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Authentication Failed</h1>
        <p>Something went wrong during sign-in. Please try again.</p>
        <p class="hint">Check the Web Resource Manager log for details. You can close this browser window.</p>
    </div>
</body>
</html>
"""
