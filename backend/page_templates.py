HOME_TEMPLATE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>livenote</title>
    <link rel="stylesheet" href="https://divy.work/tufte.css">
  </head>
  <body>
    <article>
      <h2>Welcome to livenote</h2>
      <pre><code>
<p>Instance host: {{ host }}</p>
<p>Notes: {{ notes_count }}</p>
{% if used_kb is none %}<p>Storage not available</p>{% else %}<p>Space used: {{ used_kb }} KB / {{ quota_kb }} KB</p>{% endif %}
      </code></pre>
      <footer><p><a href="https://github.com/littledivy/livenote">Host your own</a></p></footer>
    </article>
  </body>
</html>
"""


# The editor posts the edited HTML back to /sync-raw once typing pauses.
NOTE_TEMPLATE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{{ note.title }}</title>
    <link rel="stylesheet" href="https://divy.work/tufte.css">
  </head>
  <body>
    <article>
      <h1>{{ note.title }}</h1>
      <hr>
      <div contenteditable style="outline: none;">
        {{ note.body | safe }}
      </div>
    </article>
    <script>
      const SAVE_DELAY_MS = 2000;

      const saveNote = (title, body) => {
        fetch('/sync-raw', {
          method: 'POST',
          headers: {
            'Content-Type': 'application/json',
          },
          body: JSON.stringify({
            title: title,
            body: body,
          }),
        });
      };

      const showSaving = (delay) => {
        document.body.style.cursor = 'wait';
        setTimeout(() => {
          document.body.style.cursor = 'auto';
        }, delay);

        const savedMessage = document.createElement('div');
        savedMessage.textContent = 'Saving';
        savedMessage.style.position = 'fixed';
        savedMessage.style.bottom = '10px';
        savedMessage.style.right = '10px';
        savedMessage.style.backgroundColor = 'black';
        savedMessage.style.color = 'white';
        savedMessage.style.padding = '10px';
        savedMessage.style.borderRadius = '5px';
        document.body.appendChild(savedMessage);
        setTimeout(() => {
          savedMessage.remove();
        }, delay);
      };

      const debounce = (func, delay) => {
        let inDebounce;
        return function() {
          const context = this;
          const args = arguments;
          clearTimeout(inDebounce);
          inDebounce = setTimeout(() => func.apply(context, args), delay);
          showSaving(delay);
        };
      };

      const noteTitle = {{ note.title | tojson }};
      const noteBody = document.querySelector('div[contenteditable]');
      noteBody.addEventListener('input', debounce(() => {
        saveNote(noteTitle, noteBody.innerHTML);
      }, SAVE_DELAY_MS));
    </script>
  </body>
</html>
"""
